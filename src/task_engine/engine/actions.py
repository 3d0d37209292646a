"""Closed registry of action kinds the worker knows how to run."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from task_engine.engine.failures import InvalidParameters, UnknownAction


class ActionKind(str, Enum):
    SCRAPE_DASHBOARD = "scrape_dashboard"
    LOGIN_AND_SCRAPE = "login_and_scrape"


@dataclass(frozen=True, slots=True)
class ActionSpec:
    """Static capabilities of one action kind."""

    kind: ActionKind
    needs_credential: bool
    required_parameters: tuple[str, ...]


ACTION_SPECS: dict[ActionKind, ActionSpec] = {
    ActionKind.SCRAPE_DASHBOARD: ActionSpec(
        kind=ActionKind.SCRAPE_DASHBOARD,
        needs_credential=False,
        required_parameters=("url",),
    ),
    ActionKind.LOGIN_AND_SCRAPE: ActionSpec(
        kind=ActionKind.LOGIN_AND_SCRAPE,
        needs_credential=True,
        required_parameters=("url", "login_url"),
    ),
}


def resolve_action(action: str) -> ActionSpec:
    """Map a stored action string to its ``ActionSpec`` or raise ``UnknownAction``."""

    try:
        kind = ActionKind(action)
    except ValueError as error:
        raise UnknownAction(f"Unknown action: {action!r}") from error
    return ACTION_SPECS[kind]


def validate_parameters(action_spec: ActionSpec, parameters: dict[str, Any]) -> None:
    missing = [
        name
        for name in action_spec.required_parameters
        if not isinstance(parameters.get(name), str) or not parameters[name].strip()
    ]
    if missing:
        raise InvalidParameters(
            f"Action {action_spec.kind.value} is missing required parameters: {', '.join(missing)}",
        )
