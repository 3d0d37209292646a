from __future__ import annotations

import allure
import pytest

from task_engine.engine.actions import (
    ACTION_SPECS,
    ActionKind,
    resolve_action,
    validate_parameters,
)
from task_engine.engine.failures import InvalidParameters, UnknownAction
from task_engine.engine.models import FailureClass

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Worker Loop"),
]


def test_every_action_kind_has_a_definition() -> None:
    assert set(ACTION_SPECS) == set(ActionKind)
    assert all(action_spec.kind is kind for kind, action_spec in ACTION_SPECS.items())


def test_resolve_action_rejects_unknown_action() -> None:
    with pytest.raises(UnknownAction) as error_info:
        resolve_action("launch_rocket")

    assert error_info.value.failure_class == FailureClass.UNKNOWN_ACTION
    assert not error_info.value.retryable


def test_validate_parameters_lists_missing_fields() -> None:
    action_spec = resolve_action("login_and_scrape")

    with pytest.raises(InvalidParameters, match="url, login_url"):
        validate_parameters(action_spec, {"url": "  "})
    validate_parameters(
        action_spec,
        {"url": "https://example.com/app", "login_url": "https://example.com/login"},
    )
