"""Persistence for envelope-sealed integration credentials."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.sqlmodel_models import IntegrationCredential


@dataclass(slots=True)
class StoredCredential:
    """Stored credential row; ``payload`` is envelope JSON or a legacy blob."""

    credential_id: int
    target_id: str
    owner_id: str
    payload: str
    updated_at: datetime

    def __repr__(self) -> str:
        return (
            f"StoredCredential(credential_id={self.credential_id}, "
            f"target_id={self.target_id!r}, owner_id={self.owner_id!r})"
        )


class CredentialRepository:
    """Credential rows keyed by ``(target_id, owner_id)``."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def upsert_credential(self, *, target_id: str, owner_id: str, payload: str) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(IntegrationCredential).where(
                    IntegrationCredential.target_id == target_id,
                    IntegrationCredential.owner_id == owner_id,
                ),
            ).one_or_none()
            if row is None:
                row = IntegrationCredential(
                    target_id=target_id,
                    owner_id=owner_id,
                    payload=payload,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.payload = payload
                row.updated_at = now
            session.add(row)
            session.commit()

    def get_payload(self, *, target_id: str, owner_id: str) -> str | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(IntegrationCredential).where(
                    IntegrationCredential.target_id == target_id,
                    IntegrationCredential.owner_id == owner_id,
                ),
            ).one_or_none()
        return row.payload if row is not None else None

    def list_credentials(self) -> list[StoredCredential]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(IntegrationCredential).order_by(col(IntegrationCredential.id).asc()),
            ).all()
        return [
            StoredCredential(
                credential_id=row.id or 0,
                target_id=row.target_id,
                owner_id=row.owner_id,
                payload=row.payload,
                updated_at=to_utc_aware_datetime(row.updated_at),
            )
            for row in rows
        ]

    def replace_payload(
        self,
        *,
        credential_id: int,
        expected_payload: str,
        new_payload: str,
    ) -> bool:
        """Swap the payload only if nobody rewrote the row in the meantime."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(IntegrationCredential)
                .where(
                    col(IntegrationCredential.id) == credential_id,
                    col(IntegrationCredential.payload) == expected_payload,
                )
                .values(payload=new_payload, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True
