"""CheckpointStore: durable single-slot persistence of dispatch sessions."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Self

import structlog
from sqlalchemy import Column, DateTime, MetaData, String, Table, Text, create_engine, delete, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from gridpush.contracts import CheckpointRecord, Session
from gridpush.core.checkpoint.serialization import checkpoint_dumps, checkpoint_loads
from gridpush.core.clock import DEFAULT_CLOCK, Clock

logger = structlog.get_logger(__name__)

DEFAULT_SLOT = "pixel_embedder_progress"
DEFAULT_EXPIRY = timedelta(hours=24)

metadata = MetaData()

checkpoints_table = Table(
    "checkpoints",
    metadata,
    Column("slot", String(128), primary_key=True),
    Column("session_id", String(64), nullable=False),
    Column("payload_json", Text, nullable=False),
    Column("saved_at", DateTime(timezone=True), nullable=False),
)

# Everything that can go wrong between a Session and a database row.
_PERSISTENCE_ERRORS = (SQLAlchemyError, TypeError, ValueError, KeyError)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class CheckpointStore:
    """Best-effort durable key-value store for one outstanding session.

    A single well-known slot holds the serialized session plus its wall-clock
    timestamp. Every operation is total: storage and serialization failures
    are logged as warnings and degrade to a no-op, never reaching the caller.

    Records older than ``expiry`` are treated as absent. load() purges them;
    peek() only ignores them.

    Example:
        store = CheckpointStore.from_url("sqlite:///checkpoints.db")

        store.save(session)
        restored = store.load()  # None if absent, expired or unreadable
        store.clear()
    """

    def __init__(
        self,
        engine: Engine,
        *,
        slot: str = DEFAULT_SLOT,
        expiry: timedelta = DEFAULT_EXPIRY,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        """Initialize with a SQLAlchemy engine.

        Args:
            engine: Engine for the checkpoint database (tables must exist)
            slot: Key of the single checkpoint slot
            expiry: Age after which a checkpoint is discarded
            clock: Wall-clock source for timestamps and expiry checks
        """
        self._engine = engine
        self.slot = slot
        self.expiry = expiry
        self._clock = clock

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        slot: str = DEFAULT_SLOT,
        expiry: timedelta = DEFAULT_EXPIRY,
        clock: Clock = DEFAULT_CLOCK,
    ) -> Self:
        """Create a store for a database URL, creating the table if needed."""
        engine = create_engine(url, echo=False)
        if url.startswith("sqlite"):
            cls._configure_sqlite(engine)
        metadata.create_all(engine)
        return cls(engine, slot=slot, expiry=expiry, clock=clock)

    @classmethod
    def in_memory(cls, *, slot: str = DEFAULT_SLOT, expiry: timedelta = DEFAULT_EXPIRY, clock: Clock = DEFAULT_CLOCK) -> Self:
        """Create an in-memory SQLite store for testing."""
        return cls.from_url("sqlite:///:memory:", slot=slot, expiry=expiry, clock=clock)

    @staticmethod
    def _configure_sqlite(engine: Engine) -> None:
        """Durable-enough SQLite pragmas for a checkpoint written every few seconds."""

        @event.listens_for(engine, "connect")
        def _set_pragmas(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    @property
    def engine(self) -> Engine:
        return self._engine

    def save(self, session: Session) -> bool:
        """Persist a snapshot of the session into the slot.

        On success the session's ``last_checkpoint_time`` is set to the
        snapshot timestamp.

        Returns:
            True if the snapshot was committed, False if it was dropped.
        """
        timestamp = self._clock.now()
        try:
            payload = checkpoint_dumps(session.to_dict(timestamp=timestamp))
            # begin() auto-commits on clean exit, auto-rollbacks on exception
            with self._engine.begin() as conn:
                conn.execute(delete(checkpoints_table).where(checkpoints_table.c.slot == self.slot))
                conn.execute(
                    checkpoints_table.insert().values(
                        slot=self.slot,
                        session_id=session.session_id,
                        payload_json=payload,
                        saved_at=timestamp,
                    )
                )
        except _PERSISTENCE_ERRORS as e:
            logger.warning("Could not save progress", session_id=session.session_id, error=str(e), error_type=type(e).__name__)
            return False

        session.last_checkpoint_time = timestamp
        return True

    def load_record(self) -> CheckpointRecord | None:
        """Load the checkpoint record, purging it if expired.

        Returns:
            The record, or None if absent, expired or unreadable.
        """
        record = self._read()
        if record is None:
            return None
        if self._is_expired(record):
            logger.info(
                "Discarding expired checkpoint",
                session_id=record.session.session_id,
                saved_at=record.timestamp.isoformat(),
            )
            self.clear()
            return None
        return record

    def load(self) -> Session | None:
        """Load the checkpointed session, purging it if expired."""
        record = self.load_record()
        return record.session if record is not None else None

    def peek(self) -> CheckpointRecord | None:
        """Read the checkpoint without purging anything.

        Expired records read as None but are left in place for load() to purge.
        """
        record = self._read()
        if record is None or self._is_expired(record):
            return None
        return record

    def has_resumable(self) -> bool:
        """Whether a non-expired checkpoint with pending work exists. Side-effect free."""
        record = self.peek()
        return record is not None and record.session.remaining > 0

    def clear(self) -> bool:
        """Remove the checkpoint from the slot.

        Returns:
            True if the slot is now empty, False if the delete failed.
        """
        try:
            with self._engine.begin() as conn:
                conn.execute(delete(checkpoints_table).where(checkpoints_table.c.slot == self.slot))
        except SQLAlchemyError as e:
            logger.warning("Could not clear progress", slot=self.slot, error=str(e))
            return False
        return True

    def close(self) -> None:
        """Release pooled database connections."""
        self._engine.dispose()

    def _read(self) -> CheckpointRecord | None:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(select(checkpoints_table).where(checkpoints_table.c.slot == self.slot)).fetchone()
            if row is None:
                return None
            session = Session.from_dict(checkpoint_loads(row.payload_json))
        except _PERSISTENCE_ERRORS as e:
            logger.warning("Could not load progress", slot=self.slot, error=str(e), error_type=type(e).__name__)
            return None
        return CheckpointRecord(session=session, timestamp=_as_utc(row.saved_at))

    def _is_expired(self, record: CheckpointRecord) -> bool:
        return self._clock.now() - record.timestamp > self.expiry
