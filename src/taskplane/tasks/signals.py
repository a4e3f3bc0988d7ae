"""Durable signal queue shared by operator commands, cron and the scheduler loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskplane.storage.alembic_runner import upgrade_head
from taskplane.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware, utc_now
from taskplane.storage.sqlmodel_models import SignalRecord

logger = logging.getLogger(__name__)

PROCESSED_SIGNALS_KEPT = 100


class SignalType(str, Enum):
    FREEZE = "freeze"
    RESUME = "resume"
    REST_START = "rest_start"
    DAY_END = "day_end"
    TASK_ADDED = "task_added"


@dataclass(slots=True)
class Signal:
    signal_id: int
    signal_type: SignalType
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def task_id(self) -> str | None:
        value = self.payload.get("taskId")
        return str(value) if value else None


class SignalQueue:
    """Append-only signal log drained by the scheduler tick.

    CLI commands run in separate processes, so signals travel through the
    database rather than through in-memory queues.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def append(self, signal_type: SignalType, payload: dict[str, Any] | None = None) -> Signal:
        now = utc_now()
        with Session(self.engine) as session:
            row = SignalRecord(
                signal_type=SignalType(signal_type).value,
                payload_json=json.dumps(payload, ensure_ascii=False) if payload else None,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            signal = _to_signal(row)
        logger.debug("Signal queued: %s %s", signal.signal_type.value, signal.payload)
        return signal

    def pending(self) -> list[Signal]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SignalRecord)
                .where(col(SignalRecord.processed_at).is_(None))
                .order_by(col(SignalRecord.signal_id).asc()),
            ).all()
            return [_to_signal(row) for row in rows]

    def drain(self) -> list[Signal]:
        """Return unprocessed signals in arrival order and mark them processed."""

        now = utc_now()
        with Session(self.engine) as session:
            rows = session.exec(
                select(SignalRecord)
                .where(col(SignalRecord.processed_at).is_(None))
                .order_by(col(SignalRecord.signal_id).asc()),
            ).all()
            if not rows:
                return []
            signals = [_to_signal(row) for row in rows]
            ids = [row.signal_id for row in rows]
            session.exec(
                sa_update(SignalRecord)
                .where(col(SignalRecord.signal_id).in_(ids))
                .values(processed_at=to_db_datetime(now)),
            )
            self._prune_processed(session)
            session.commit()
        return signals

    def _prune_processed(self, session: Session) -> None:
        keep_ids = session.exec(
            select(SignalRecord.signal_id)
            .where(col(SignalRecord.processed_at).is_not(None))
            .order_by(col(SignalRecord.signal_id).desc())
            .limit(PROCESSED_SIGNALS_KEPT),
        ).all()
        if len(keep_ids) < PROCESSED_SIGNALS_KEPT:
            return
        session.exec(
            sa_delete(SignalRecord).where(
                col(SignalRecord.processed_at).is_not(None),
                col(SignalRecord.signal_id).not_in(keep_ids),
            ),
        )


def _to_signal(row: SignalRecord) -> Signal:
    payload = json.loads(row.payload_json) if row.payload_json else {}
    return Signal(
        signal_id=row.signal_id or 0,
        signal_type=SignalType(row.signal_type),
        payload=payload if isinstance(payload, dict) else {},
        created_at=to_utc_aware(row.created_at),
    )
