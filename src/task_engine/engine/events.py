"""Append-only task event log."""

from __future__ import annotations

import json
import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from task_engine.engine.models import EventLevel, TaskStatus
from task_engine.storage.common import to_db_datetime, utc_now
from task_engine.storage.sqlmodel_models import AgentTaskEvent

logger = logging.getLogger(__name__)


class EventLog:
    """Write-only audit trail of task lifecycle transitions.

    Writes run in their own short transaction and never raise: a failed write
    is reported through ``logging`` and the task pipeline carries on.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def append(  # noqa: PLR0913
        self,
        task_id: str,
        level: EventLevel,
        message: str,
        context: dict[str, object] | None = None,
        *,
        event_type: str,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
    ) -> bool:
        try:
            context_json = (
                json.dumps(context, ensure_ascii=False, sort_keys=True, default=str)
                if context
                else None
            )
            with Session(self.engine) as session:
                session.add(
                    AgentTaskEvent(
                        task_id=task_id,
                        level=level.value,
                        event_type=event_type,
                        message=message,
                        status_from=status_from.value if status_from is not None else None,
                        status_to=status_to.value if status_to is not None else None,
                        context_json=context_json,
                        created_at=to_db_datetime(utc_now()),
                    ),
                )
                session.commit()
        except (SQLAlchemyError, TypeError, ValueError) as error:
            logger.warning(
                "Failed to append %s event for task %s: %s",
                event_type,
                task_id,
                error,
            )
            return False
        return True
