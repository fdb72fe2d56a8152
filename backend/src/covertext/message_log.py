from __future__ import annotations

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import MessageDirection

logger = logging.getLogger(__name__)


class NotFoundError(KeyError):
    """Raised when a message or agency id does not resolve to a stored record."""


@dataclass(frozen=True)
class AgencyRecord:
    agency_id: str
    name: str
    sms_phone_number: str
    active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class MessageLogRecord:
    message_id: str
    agency_id: str
    direction: MessageDirection
    from_phone: str
    to_phone: str
    body: str
    provider_message_id: str | None
    media_count: int
    delivery_state: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class AuditEventRecord:
    event_id: str
    agency_id: str
    event_type: str
    metadata: dict[str, Any]
    created_at: datetime


class MessageLogRepository(Protocol):
    def reset(self) -> None: ...

    def upsert_agency(self, *, agency_id: str, name: str, sms_phone_number: str, active: bool = True) -> AgencyRecord: ...

    def get_agency(self, agency_id: str) -> AgencyRecord: ...

    def find_agency_by_sms_number(self, sms_phone_number: str) -> AgencyRecord | None: ...

    def list_agencies(self) -> list[AgencyRecord]: ...

    def register_inbound(
        self,
        *,
        agency_id: str,
        from_phone: str,
        to_phone: str,
        body: str,
        provider_message_id: str,
        media_count: int,
    ) -> tuple[MessageLogRecord, bool]: ...

    def get_message(self, message_id: str) -> MessageLogRecord: ...

    def list_messages(self, *, agency_id: str, limit: int) -> list[MessageLogRecord]: ...

    def append_outbound(
        self,
        *,
        agency_id: str,
        from_phone: str,
        to_phone: str,
        body: str,
        provider_message_id: str | None,
        delivery_state: str,
        media_count: int = 0,
    ) -> MessageLogRecord: ...

    def update_delivery_status(self, *, provider_message_id: str, delivery_state: str) -> MessageLogRecord | None: ...

    def record_audit_event(self, *, agency_id: str, event_type: str, metadata: dict[str, Any]) -> AuditEventRecord: ...

    def list_audit_events(self, *, agency_id: str, limit: int) -> list[AuditEventRecord]: ...


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InMemoryMessageLogRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._message_counter = count(1)
        self._event_counter = count(1)
        self._agencies: dict[str, AgencyRecord] = {}
        self._messages: dict[str, MessageLogRecord] = {}
        self._messages_by_provider_id: dict[str, str] = {}
        self._events_by_agency: dict[str, list[AuditEventRecord]] = defaultdict(list)

    def reset(self) -> None:
        with self._lock:
            self._message_counter = count(1)
            self._event_counter = count(1)
            self._agencies.clear()
            self._messages.clear()
            self._messages_by_provider_id.clear()
            self._events_by_agency.clear()

    def upsert_agency(self, *, agency_id: str, name: str, sms_phone_number: str, active: bool = True) -> AgencyRecord:
        now = _now_utc()
        with self._lock:
            existing = self._agencies.get(agency_id)
            if existing is None:
                record = AgencyRecord(
                    agency_id=agency_id,
                    name=name,
                    sms_phone_number=sms_phone_number,
                    active=active,
                    created_at=now,
                    updated_at=now,
                )
            else:
                record = replace(existing, name=name, sms_phone_number=sms_phone_number, active=active, updated_at=now)
            self._agencies[agency_id] = record
            return record

    def get_agency(self, agency_id: str) -> AgencyRecord:
        with self._lock:
            record = self._agencies.get(agency_id)
        if record is None:
            raise NotFoundError(f"agency not found: {agency_id}")
        return record

    def find_agency_by_sms_number(self, sms_phone_number: str) -> AgencyRecord | None:
        with self._lock:
            for record in self._agencies.values():
                if record.active and record.sms_phone_number == sms_phone_number:
                    return record
        return None

    def list_agencies(self) -> list[AgencyRecord]:
        with self._lock:
            return sorted(self._agencies.values(), key=lambda value: value.agency_id)

    def register_inbound(
        self,
        *,
        agency_id: str,
        from_phone: str,
        to_phone: str,
        body: str,
        provider_message_id: str,
        media_count: int,
    ) -> tuple[MessageLogRecord, bool]:
        with self._lock:
            existing_id = self._messages_by_provider_id.get(provider_message_id)
            if existing_id is not None:
                return self._messages[existing_id], True
            record = self._new_message(
                agency_id=agency_id,
                direction="inbound",
                from_phone=from_phone,
                to_phone=to_phone,
                body=body,
                provider_message_id=provider_message_id,
                delivery_state="received",
                media_count=media_count,
            )
            return record, False

    def get_message(self, message_id: str) -> MessageLogRecord:
        with self._lock:
            record = self._messages.get(message_id)
        if record is None:
            raise NotFoundError(f"message not found: {message_id}")
        return record

    def list_messages(self, *, agency_id: str, limit: int) -> list[MessageLogRecord]:
        with self._lock:
            matching = [value for value in self._messages.values() if value.agency_id == agency_id]
        return matching[-limit:]

    def append_outbound(
        self,
        *,
        agency_id: str,
        from_phone: str,
        to_phone: str,
        body: str,
        provider_message_id: str | None,
        delivery_state: str,
        media_count: int = 0,
    ) -> MessageLogRecord:
        with self._lock:
            return self._new_message(
                agency_id=agency_id,
                direction="outbound",
                from_phone=from_phone,
                to_phone=to_phone,
                body=body,
                provider_message_id=provider_message_id,
                delivery_state=delivery_state,
                media_count=media_count,
            )

    def update_delivery_status(self, *, provider_message_id: str, delivery_state: str) -> MessageLogRecord | None:
        with self._lock:
            message_id = self._messages_by_provider_id.get(provider_message_id)
            if message_id is None:
                return None
            current = self._messages[message_id]
            if current.direction != "outbound":
                return None
            updated = replace(current, delivery_state=delivery_state, updated_at=_now_utc())
            self._messages[message_id] = updated
            return updated

    def record_audit_event(self, *, agency_id: str, event_type: str, metadata: dict[str, Any]) -> AuditEventRecord:
        with self._lock:
            event = AuditEventRecord(
                event_id=f"audit_{next(self._event_counter):06d}",
                agency_id=agency_id,
                event_type=event_type,
                metadata=dict(metadata),
                created_at=_now_utc(),
            )
            self._events_by_agency[agency_id].append(event)
            return event

    def list_audit_events(self, *, agency_id: str, limit: int) -> list[AuditEventRecord]:
        with self._lock:
            events = list(self._events_by_agency.get(agency_id, []))
        return events[-limit:]

    def _new_message(
        self,
        *,
        agency_id: str,
        direction: MessageDirection,
        from_phone: str,
        to_phone: str,
        body: str,
        provider_message_id: str | None,
        delivery_state: str,
        media_count: int,
    ) -> MessageLogRecord:
        now = _now_utc()
        record = MessageLogRecord(
            message_id=f"msg_{next(self._message_counter):06d}",
            agency_id=agency_id,
            direction=direction,
            from_phone=from_phone,
            to_phone=to_phone,
            body=body,
            provider_message_id=provider_message_id,
            media_count=media_count,
            delivery_state=delivery_state,
            created_at=now,
            updated_at=now,
        )
        self._messages[record.message_id] = record
        if provider_message_id:
            self._messages_by_provider_id[provider_message_id] = record.message_id
        return record


class MessageLogBase(DeclarativeBase):
    pass


class _AgencyRow(MessageLogBase):
    __tablename__ = "agencies"

    agency_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    sms_phone_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _MessageLogRow(MessageLogBase):
    __tablename__ = "message_logs"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    from_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    to_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    media_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivery_state: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _AuditEventRow(MessageLogBase):
    __tablename__ = "audit_events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agency_id: Mapped[str] = mapped_column(String(64), ForeignKey("agencies.agency_id"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    metadata_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyMessageLogRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for CONVERSATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            MessageLogBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_AuditEventRow).delete()
                session.query(_MessageLogRow).delete()
                session.query(_AgencyRow).delete()

    def upsert_agency(self, *, agency_id: str, name: str, sms_phone_number: str, active: bool = True) -> AgencyRecord:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_AgencyRow, agency_id)
                if row is None:
                    row = _AgencyRow(agency_id=agency_id, created_at=now)
                    session.add(row)
                row.name = name
                row.sms_phone_number = sms_phone_number
                row.active = active
                row.updated_at = now
                session.flush()
                return self._agency_record(row)

    def get_agency(self, agency_id: str) -> AgencyRecord:
        with self._session() as session:
            row = session.get(_AgencyRow, agency_id)
            if row is None:
                raise NotFoundError(f"agency not found: {agency_id}")
            return self._agency_record(row)

    def find_agency_by_sms_number(self, sms_phone_number: str) -> AgencyRecord | None:
        with self._session() as session:
            row = session.scalar(
                select(_AgencyRow)
                .where(_AgencyRow.sms_phone_number == sms_phone_number)
                .where(_AgencyRow.active.is_(True))
            )
            return self._agency_record(row) if row is not None else None

    def list_agencies(self) -> list[AgencyRecord]:
        with self._session() as session:
            rows = session.scalars(select(_AgencyRow).order_by(_AgencyRow.agency_id.asc())).all()
            return [self._agency_record(row) for row in rows]

    def register_inbound(
        self,
        *,
        agency_id: str,
        from_phone: str,
        to_phone: str,
        body: str,
        provider_message_id: str,
        media_count: int,
    ) -> tuple[MessageLogRecord, bool]:
        try:
            with self._session() as session:
                with session.begin():
                    existing = self._find_by_provider_id(session, provider_message_id)
                    if existing is not None:
                        return self._message_record(existing), True
                    row = self._new_row(
                        agency_id=agency_id,
                        direction="inbound",
                        from_phone=from_phone,
                        to_phone=to_phone,
                        body=body,
                        provider_message_id=provider_message_id,
                        delivery_state="received",
                        media_count=media_count,
                    )
                    session.add(row)
                    session.flush()
                    return self._message_record(row), False
        except IntegrityError:
            # A concurrent delivery of the same provider id won the insert.
            with self._session() as session:
                existing = self._find_by_provider_id(session, provider_message_id)
                if existing is None:
                    raise
                logger.info("concurrent inbound delivery for %s deduped", provider_message_id)
                return self._message_record(existing), True

    def get_message(self, message_id: str) -> MessageLogRecord:
        with self._session() as session:
            row = session.get(_MessageLogRow, message_id)
            if row is None:
                raise NotFoundError(f"message not found: {message_id}")
            return self._message_record(row)

    def list_messages(self, *, agency_id: str, limit: int) -> list[MessageLogRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_MessageLogRow)
                .where(_MessageLogRow.agency_id == agency_id)
                .order_by(_MessageLogRow.created_at.desc())
                .limit(limit)
            ).all()
            return [self._message_record(row) for row in reversed(rows)]

    def append_outbound(
        self,
        *,
        agency_id: str,
        from_phone: str,
        to_phone: str,
        body: str,
        provider_message_id: str | None,
        delivery_state: str,
        media_count: int = 0,
    ) -> MessageLogRecord:
        with self._session() as session:
            with session.begin():
                row = self._new_row(
                    agency_id=agency_id,
                    direction="outbound",
                    from_phone=from_phone,
                    to_phone=to_phone,
                    body=body,
                    provider_message_id=provider_message_id,
                    delivery_state=delivery_state,
                    media_count=media_count,
                )
                session.add(row)
                session.flush()
                return self._message_record(row)

    def update_delivery_status(self, *, provider_message_id: str, delivery_state: str) -> MessageLogRecord | None:
        with self._session() as session:
            with session.begin():
                row = session.scalar(
                    select(_MessageLogRow)
                    .where(_MessageLogRow.provider_message_id == provider_message_id)
                    .where(_MessageLogRow.direction == "outbound")
                )
                if row is None:
                    return None
                row.delivery_state = delivery_state
                row.updated_at = _now_utc()
                session.flush()
                return self._message_record(row)

    def record_audit_event(self, *, agency_id: str, event_type: str, metadata: dict[str, Any]) -> AuditEventRecord:
        with self._session() as session:
            with session.begin():
                row = _AuditEventRow(
                    agency_id=agency_id,
                    event_type=event_type,
                    metadata_json=json.dumps(metadata, sort_keys=True, separators=(",", ":"), default=str),
                    created_at=_now_utc(),
                )
                session.add(row)
                session.flush()
                return self._event_record(row)

    def list_audit_events(self, *, agency_id: str, limit: int) -> list[AuditEventRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_AuditEventRow)
                .where(_AuditEventRow.agency_id == agency_id)
                .order_by(_AuditEventRow.event_id.desc())
                .limit(limit)
            ).all()
            return [self._event_record(row) for row in reversed(rows)]

    @staticmethod
    def _new_row(
        *,
        agency_id: str,
        direction: MessageDirection,
        from_phone: str,
        to_phone: str,
        body: str,
        provider_message_id: str | None,
        delivery_state: str,
        media_count: int,
    ) -> _MessageLogRow:
        now = _now_utc()
        return _MessageLogRow(
            message_id=f"msg_{uuid4().hex}",
            agency_id=agency_id,
            direction=direction,
            from_phone=from_phone,
            to_phone=to_phone,
            body=body,
            provider_message_id=provider_message_id,
            media_count=media_count,
            delivery_state=delivery_state,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _find_by_provider_id(session, provider_message_id: str) -> _MessageLogRow | None:
        return session.scalar(
            select(_MessageLogRow).where(_MessageLogRow.provider_message_id == provider_message_id)
        )

    @staticmethod
    def _agency_record(row: _AgencyRow) -> AgencyRecord:
        return AgencyRecord(
            agency_id=row.agency_id,
            name=row.name,
            sms_phone_number=row.sms_phone_number,
            active=row.active,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _message_record(row: _MessageLogRow) -> MessageLogRecord:
        return MessageLogRecord(
            message_id=row.message_id,
            agency_id=row.agency_id,
            direction=row.direction,  # type: ignore[arg-type]
            from_phone=row.from_phone,
            to_phone=row.to_phone,
            body=row.body,
            provider_message_id=row.provider_message_id,
            media_count=row.media_count,
            delivery_state=row.delivery_state,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _event_record(row: _AuditEventRow) -> AuditEventRecord:
        return AuditEventRecord(
            event_id=str(row.event_id),
            agency_id=row.agency_id,
            event_type=row.event_type,
            metadata=json.loads(row.metadata_json),
            created_at=_as_utc(row.created_at),
        )


def create_message_log_repository(*, backend: str, database_url: str) -> MessageLogRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyMessageLogRepository(database_url)
    if normalized == "inmemory":
        return InMemoryMessageLogRepository()
    raise RuntimeError(f"unsupported CONVERSATION_STORE_BACKEND: {backend}")
