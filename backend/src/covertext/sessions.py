from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Mapping, Protocol
from uuid import uuid4

from sqlalchemy import DateTime, String, Text, UniqueConstraint, create_engine, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import CONVERSATION_STATES, ConversationState, is_e164

logger = logging.getLogger(__name__)

LAST_MENU_SENT_AT = "last_menu_sent_at"


class ValidationError(ValueError):
    """Raised when a session cannot be persisted without breaking its invariants."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except (TypeError, ValueError):
        return None
    return _as_utc(parsed)


@dataclass(frozen=True)
class SessionContext:
    """Cross-turn memory for a conversation session.

    ``last_menu_sent_at`` is the only key the engine reads. It is kept as the raw
    stored string so that a malformed value survives a round trip untouched;
    :meth:`menu_sent_at` is the typed view. Keys the engine does not know about
    are carried in ``extra``.
    """

    last_menu_sent_at: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    KNOWN_KEYS = frozenset({LAST_MENU_SENT_AT})

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "SessionContext":
        if not raw:
            return cls()
        last_sent = raw.get(LAST_MENU_SENT_AT)
        extra = {str(key): value for key, value in raw.items() if key not in cls.KNOWN_KEYS}
        return cls(
            last_menu_sent_at=str(last_sent) if last_sent is not None else None,
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        values = dict(self.extra)
        if self.last_menu_sent_at is not None:
            values[LAST_MENU_SENT_AT] = self.last_menu_sent_at
        return values

    def menu_sent_at(self) -> datetime | None:
        return parse_timestamp(self.last_menu_sent_at)

    def with_menu_sent_at(self, sent_at: datetime) -> "SessionContext":
        return replace(self, last_menu_sent_at=sent_at.isoformat())


@dataclass(frozen=True)
class ConversationSessionRecord:
    session_id: str | None
    agency_id: str
    from_phone_e164: str
    state: ConversationState | None
    context: SessionContext
    last_activity_at: datetime | None
    expires_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    @property
    def persisted(self) -> bool:
        return self.session_id is not None

    @property
    def key(self) -> tuple[str, str]:
        return (self.agency_id, self.from_phone_e164)


def _context_json(context: SessionContext) -> str:
    return json.dumps(context.to_dict(), sort_keys=True, separators=(",", ":"))


def new_session(*, agency_id: str, from_phone: str) -> ConversationSessionRecord:
    return ConversationSessionRecord(
        session_id=None,
        agency_id=agency_id,
        from_phone_e164=from_phone.strip(),
        state=None,
        context=SessionContext(),
        last_activity_at=None,
        expires_at=None,
        created_at=None,
        updated_at=None,
    )


def validate_session(record: ConversationSessionRecord) -> None:
    if not record.agency_id or not record.agency_id.strip():
        raise ValidationError("agency_id is required")
    if not record.from_phone_e164 or not record.from_phone_e164.strip():
        raise ValidationError("from_phone_e164 is required")
    if not is_e164(record.from_phone_e164):
        raise ValidationError(f"from_phone_e164 is not an E.164 number: {record.from_phone_e164!r}")
    if record.state is not None and record.state not in CONVERSATION_STATES:
        raise ValidationError(f"unknown conversation state: {record.state!r}")


class SessionStore(Protocol):
    def reset(self) -> None: ...

    def find_or_create(self, *, agency_id: str, from_phone: str) -> ConversationSessionRecord: ...

    def save(self, record: ConversationSessionRecord) -> ConversationSessionRecord: ...

    def get(self, session_id: str) -> ConversationSessionRecord | None: ...

    def list_sessions(self, *, agency_id: str, limit: int) -> list[ConversationSessionRecord]: ...


class InMemorySessionStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._session_counter = count(1)
        self._sessions: dict[str, ConversationSessionRecord] = {}
        self._session_by_key: dict[tuple[str, str], str] = {}

    def reset(self) -> None:
        with self._lock:
            self._session_counter = count(1)
            self._sessions.clear()
            self._session_by_key.clear()

    def find_or_create(self, *, agency_id: str, from_phone: str) -> ConversationSessionRecord:
        with self._lock:
            existing_id = self._session_by_key.get((agency_id, from_phone.strip()))
            if existing_id is not None:
                return self._sessions[existing_id]
        return new_session(agency_id=agency_id, from_phone=from_phone)

    def save(self, record: ConversationSessionRecord) -> ConversationSessionRecord:
        validate_session(record)
        now = _now_utc()
        with self._lock:
            existing_id = self._session_by_key.get(record.key)
            if record.session_id is None:
                if existing_id is not None:
                    logger.info("coalescing concurrent session create into %s", existing_id)
                    current = self._sessions[existing_id]
                    stored = replace(record, session_id=existing_id, created_at=current.created_at, updated_at=now)
                else:
                    stored = replace(
                        record,
                        session_id=f"csess_{next(self._session_counter):06d}",
                        created_at=now,
                        updated_at=now,
                    )
                    self._session_by_key[record.key] = stored.session_id  # type: ignore[assignment]
            else:
                current = self._sessions.get(record.session_id)
                if current is None:
                    raise ValidationError(f"session does not exist: {record.session_id}")
                if existing_id is not None and existing_id != record.session_id:
                    raise ValidationError(
                        f"session {existing_id} already exists for this agency and sender"
                    )
                if current.key != record.key:
                    self._session_by_key.pop(current.key, None)
                    self._session_by_key[record.key] = record.session_id
                stored = replace(record, created_at=current.created_at, updated_at=now)
            self._sessions[stored.session_id] = stored  # type: ignore[index]
            return stored

    def get(self, session_id: str) -> ConversationSessionRecord | None:
        with self._lock:
            return self._sessions.get(session_id)

    def list_sessions(self, *, agency_id: str, limit: int) -> list[ConversationSessionRecord]:
        with self._lock:
            matching = [value for value in self._sessions.values() if value.agency_id == agency_id]
        ordered = sorted(matching, key=lambda value: value.updated_at or _now_utc(), reverse=True)
        return ordered[:limit]


class SessionsBase(DeclarativeBase):
    pass


class _ConversationSessionRow(SessionsBase):
    __tablename__ = "conversation_sessions"
    __table_args__ = (
        UniqueConstraint("agency_id", "from_phone_e164", name="uq_conversation_sessions_agency_phone"),
    )

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_phone_e164: Mapped[str] = mapped_column(String(32), nullable=False)
    state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    context_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemySessionStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SessionsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ConversationSessionRow).delete()

    def find_or_create(self, *, agency_id: str, from_phone: str) -> ConversationSessionRecord:
        with self._session() as session:
            row = self._find_row(session, agency_id=agency_id, from_phone=from_phone.strip())
            if row is not None:
                return self._session_record(row)
        return new_session(agency_id=agency_id, from_phone=from_phone)

    def save(self, record: ConversationSessionRecord) -> ConversationSessionRecord:
        validate_session(record)
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                if record.session_id is None:
                    row = self._find_row(session, agency_id=record.agency_id, from_phone=record.from_phone_e164)
                    if row is None:
                        row = self._insert_or_coalesce(session, record, now)
                    else:
                        logger.info("coalescing concurrent session create into %s", row.session_id)
                        self._apply(row, record, now)
                else:
                    row = session.get(_ConversationSessionRow, record.session_id)
                    if row is None:
                        raise ValidationError(f"session does not exist: {record.session_id}")
                    clash = self._find_row(session, agency_id=record.agency_id, from_phone=record.from_phone_e164)
                    if clash is not None and clash.session_id != row.session_id:
                        raise ValidationError(
                            f"session {clash.session_id} already exists for this agency and sender"
                        )
                    row.agency_id = record.agency_id
                    row.from_phone_e164 = record.from_phone_e164
                    self._apply(row, record, now)
                session.flush()
                return self._session_record(row)

    def get(self, session_id: str) -> ConversationSessionRecord | None:
        with self._session() as session:
            row = session.get(_ConversationSessionRow, session_id)
            return self._session_record(row) if row is not None else None

    def list_sessions(self, *, agency_id: str, limit: int) -> list[ConversationSessionRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ConversationSessionRow)
                .where(_ConversationSessionRow.agency_id == agency_id)
                .order_by(_ConversationSessionRow.updated_at.desc())
                .limit(limit)
            ).all()
            return [self._session_record(row) for row in rows]

    def _insert_or_coalesce(self, session, record: ConversationSessionRecord, now: datetime) -> _ConversationSessionRow:
        statement = (
            self._dialect_insert(_ConversationSessionRow)
            .values(
                session_id=f"csess_{uuid4().hex}",
                agency_id=record.agency_id,
                from_phone_e164=record.from_phone_e164,
                state=record.state,
                context_json=_context_json(record.context),
                last_activity_at=record.last_activity_at,
                expires_at=record.expires_at,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["agency_id", "from_phone_e164"])
        )
        try:
            result = session.execute(statement)
        except IntegrityError as exc:
            raise ValidationError(f"session insert violated a constraint: {exc.orig}") from exc
        row = self._find_row(session, agency_id=record.agency_id, from_phone=record.from_phone_e164)
        if row is None:
            raise ValidationError("session row missing after insert")
        if result.rowcount == 0:
            logger.info("coalescing concurrent session create into %s", row.session_id)
            self._apply(row, record, now)
        return row

    def _dialect_insert(self, table):
        dialect = self._engine.dialect.name
        if dialect == "postgresql":
            return postgresql_insert(table)
        if dialect == "sqlite":
            return sqlite_insert(table)
        raise RuntimeError(f"unsupported database dialect for conversation sessions: {dialect}")

    @staticmethod
    def _find_row(session, *, agency_id: str, from_phone: str) -> _ConversationSessionRow | None:
        return session.scalar(
            select(_ConversationSessionRow)
            .where(_ConversationSessionRow.agency_id == agency_id)
            .where(_ConversationSessionRow.from_phone_e164 == from_phone)
        )

    @staticmethod
    def _apply(row: _ConversationSessionRow, record: ConversationSessionRecord, now: datetime) -> None:
        row.state = record.state
        row.context_json = _context_json(record.context)
        row.last_activity_at = record.last_activity_at
        row.expires_at = record.expires_at
        row.updated_at = now

    @staticmethod
    def _session_record(row: _ConversationSessionRow) -> ConversationSessionRecord:
        try:
            raw_context = json.loads(row.context_json or "{}")
        except ValueError:
            logger.warning("discarding unreadable context for session %s", row.session_id)
            raw_context = {}
        return ConversationSessionRecord(
            session_id=row.session_id,
            agency_id=row.agency_id,
            from_phone_e164=row.from_phone_e164,
            state=row.state,  # type: ignore[arg-type]
            context=SessionContext.from_dict(raw_context if isinstance(raw_context, dict) else {}),
            last_activity_at=_as_utc(row.last_activity_at),
            expires_at=_as_utc(row.expires_at),
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )


def create_session_store(*, backend: str, database_url: str) -> SessionStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemySessionStore(database_url)
    if normalized == "inmemory":
        return InMemorySessionStore()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")
