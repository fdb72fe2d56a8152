from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from covertext.conversation_manager import MENU_SENT_EVENT, ConversationManager
from covertext.message_log import (
    AgencyRecord,
    InMemoryMessageLogRepository,
    MessageLogRecord,
    MessageLogRepository,
    NotFoundError,
    SqlAlchemyMessageLogRepository,
)
from covertext.message_templates import GLOBAL_MENU, GLOBAL_MENU_SHORT
from covertext.messenger import DeliveryAttempt, DeliverySendError, StubOutboundMessenger
from covertext.sessions import (
    ConversationSessionRecord,
    InMemorySessionStore,
    SessionContext,
    SessionStore,
    SqlAlchemySessionStore,
    ValidationError,
    new_session,
)

AGENCY_ID = "agency-reliable"
AGENCY_NUMBER = "+15550001111"
FROM_PHONE = "+15559876543"
START = datetime(2026, 3, 2, 15, 0, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)

    def set(self, value: datetime) -> None:
        self.now = value


class _RecordingSessionStore(InMemorySessionStore):
    def __init__(self) -> None:
        super().__init__()
        self.saved: list[ConversationSessionRecord] = []

    def save(self, record: ConversationSessionRecord) -> ConversationSessionRecord:
        self.saved.append(record)
        return super().save(record)


class _ExplodingMessenger:
    def __init__(self, repository: MessageLogRepository) -> None:
        self._repository = repository

    def send_sms(self, *, agency: AgencyRecord, to_phone: str, body: str) -> DeliveryAttempt:
        self._repository.append_outbound(
            agency_id=agency.agency_id,
            from_phone=agency.sms_phone_number,
            to_phone=to_phone,
            body=body,
            provider_message_id=None,
            delivery_state="failed",
        )
        raise DeliverySendError("http_503", "HTTP 503: Service Unavailable")


@dataclass
class _Harness:
    repo: MessageLogRepository
    sessions: SessionStore
    manager: ConversationManager
    clock: _Clock


def _harness(
    *,
    repo: MessageLogRepository | None = None,
    sessions: SessionStore | None = None,
    messenger=None,
) -> _Harness:
    repo = repo or InMemoryMessageLogRepository()
    sessions = sessions or InMemorySessionStore()
    repo.upsert_agency(agency_id=AGENCY_ID, name="Reliable Insurance", sms_phone_number=AGENCY_NUMBER)
    clock = _Clock(START)
    manager = ConversationManager(
        sessions=sessions,
        message_log=repo,
        messenger=messenger or StubOutboundMessenger(repository=repo),
        clock=clock,
    )
    return _Harness(repo=repo, sessions=sessions, manager=manager, clock=clock)


def _inbound(repo: MessageLogRepository, body: str, *, from_phone: str = FROM_PHONE, agency_id: str = AGENCY_ID) -> str:
    record, deduped = repo.register_inbound(
        agency_id=agency_id,
        from_phone=from_phone,
        to_phone=AGENCY_NUMBER,
        body=body,
        provider_message_id=f"SM{uuid4().hex}",
        media_count=0,
    )
    assert deduped is False
    return record.message_id


def _outbound(repo: MessageLogRepository, agency_id: str = AGENCY_ID) -> list[MessageLogRecord]:
    return [value for value in repo.list_messages(agency_id=agency_id, limit=500) if value.direction == "outbound"]


def _menu_events(repo: MessageLogRepository, agency_id: str = AGENCY_ID):
    return [
        value
        for value in repo.list_audit_events(agency_id=agency_id, limit=500)
        if value.event_type == MENU_SENT_EVENT
    ]


def _only_session(h: _Harness, agency_id: str = AGENCY_ID) -> ConversationSessionRecord:
    sessions = h.sessions.list_sessions(agency_id=agency_id, limit=10)
    assert len(sessions) == 1
    return sessions[0]


def test_first_inbound_creates_session_and_sends_full_menu() -> None:
    h = _harness()
    message_id = _inbound(h.repo, "Hello")

    h.manager.process_inbound(message_id)

    session = _only_session(h)
    assert session.agency_id == AGENCY_ID
    assert session.from_phone_e164 == FROM_PHONE
    assert session.state == "awaiting_intent_selection"
    assert session.last_activity_at == START
    assert session.expires_at == START + timedelta(minutes=15)
    assert session.context.last_menu_sent_at == START.isoformat()

    outbound = _outbound(h.repo)
    assert len(outbound) == 1
    assert outbound[0].from_phone == AGENCY_NUMBER
    assert outbound[0].to_phone == FROM_PHONE
    assert outbound[0].body == GLOBAL_MENU
    assert outbound[0].body.startswith("Welcome to CoverText")
    for keyword in ("CARD", "EXPIRING", "HELP"):
        assert keyword in outbound[0].body

    events = _menu_events(h.repo)
    assert len(events) == 1
    assert events[0].metadata == {
        "message_id": message_id,
        "template": "global.menu",
        "session_id": session.session_id,
    }


def test_second_message_within_rate_limit_gets_short_menu() -> None:
    h = _harness()
    h.manager.process_inbound(_inbound(h.repo, "First"))
    first_session = _only_session(h)

    h.clock.advance(seconds=30)
    h.manager.process_inbound(_inbound(h.repo, "Second"))

    session = _only_session(h)
    assert session.session_id == first_session.session_id
    assert session.last_activity_at == START + timedelta(seconds=30)
    assert session.context.last_menu_sent_at == START.isoformat()

    outbound = _outbound(h.repo)
    assert outbound[-1].body == GLOBAL_MENU_SHORT
    assert outbound[-1].body == "Reply: CARD, EXPIRING, or HELP"
    assert "Welcome" not in outbound[-1].body
    assert _menu_events(h.repo)[-1].metadata["template"] == "global.menu_short"


def test_message_after_rate_limit_gets_full_menu_again() -> None:
    h = _harness()
    h.manager.process_inbound(_inbound(h.repo, "First"))
    h.clock.advance(seconds=30)
    h.manager.process_inbound(_inbound(h.repo, "Second"))
    h.clock.set(START + timedelta(seconds=61))
    h.manager.process_inbound(_inbound(h.repo, "Third"))

    bodies = [value.body for value in _outbound(h.repo)]
    assert bodies == [GLOBAL_MENU, GLOBAL_MENU_SHORT, GLOBAL_MENU]
    assert [value.metadata["template"] for value in _menu_events(h.repo)] == [
        "global.menu",
        "global.menu_short",
        "global.menu",
    ]
    assert _only_session(h).context.last_menu_sent_at == (START + timedelta(seconds=61)).isoformat()


def test_short_menu_does_not_move_the_rate_limit_anchor() -> None:
    h = _harness()
    schedule = [0, 30, 59, 61, 91, 122]
    for offset in schedule:
        h.clock.set(START + timedelta(seconds=offset))
        h.manager.process_inbound(_inbound(h.repo, f"ping {offset}"))

    templates = [value.metadata["template"] for value in _menu_events(h.repo)]
    assert templates == [
        "global.menu",
        "global.menu_short",
        "global.menu_short",
        "global.menu",
        "global.menu_short",
        "global.menu",
    ]


def test_subsequent_messages_update_existing_session() -> None:
    h = _harness()
    h.manager.process_inbound(_inbound(h.repo, "First"))
    original = _only_session(h)

    h.clock.advance(minutes=5)
    h.manager.process_inbound(_inbound(h.repo, "Second"))

    updated = _only_session(h)
    assert updated.session_id == original.session_id
    assert updated.last_activity_at > original.last_activity_at
    assert updated.expires_at == h.clock.now + timedelta(minutes=15)


def test_expired_session_is_reset_in_place() -> None:
    sessions = _RecordingSessionStore()
    h = _harness(sessions=sessions)
    seeded = sessions.save(
        replace(
            new_session(agency_id=AGENCY_ID, from_phone=FROM_PHONE),
            state="awaiting_intent_selection",
            context=SessionContext(
                last_menu_sent_at=(START - timedelta(seconds=20)).isoformat(),
                extra={"old_data": "should_be_cleared"},
            ),
            last_activity_at=START - timedelta(minutes=20),
            expires_at=START - timedelta(minutes=5),
        )
    )
    sessions.saved.clear()

    h.manager.process_inbound(_inbound(h.repo, "New message"))

    # First write of the cycle carries the wiped context.
    assert sessions.saved[0].context == SessionContext()
    assert sessions.saved[0].state == "awaiting_intent_selection"

    session = _only_session(h)
    assert session.session_id == seeded.session_id
    assert session.state == "awaiting_intent_selection"
    assert "old_data" not in session.context.to_dict()
    assert session.context.last_menu_sent_at == START.isoformat()
    assert _outbound(h.repo)[-1].body == GLOBAL_MENU


def test_live_session_keeps_unrelated_context() -> None:
    h = _harness()
    h.sessions.save(
        replace(
            new_session(agency_id=AGENCY_ID, from_phone=FROM_PHONE),
            state="awaiting_intent_selection",
            context=SessionContext(extra={"pending_policy": "POL-123"}),
            last_activity_at=START - timedelta(minutes=2),
            expires_at=START + timedelta(minutes=13),
        )
    )

    h.manager.process_inbound(_inbound(h.repo, "Still here"))

    context = _only_session(h).context.to_dict()
    assert context["pending_policy"] == "POL-123"
    assert context["last_menu_sent_at"] == START.isoformat()


def test_expires_at_is_rearmed_fifteen_minutes_out() -> None:
    h = _harness()
    h.clock.set(START + timedelta(hours=3, seconds=7))
    h.manager.process_inbound(_inbound(h.repo, "Test"))

    session = _only_session(h)
    assert session.expires_at == h.clock.now + timedelta(minutes=15)


def test_malformed_menu_timestamp_fails_open_to_full_menu() -> None:
    h = _harness()
    h.sessions.save(
        replace(
            new_session(agency_id=AGENCY_ID, from_phone=FROM_PHONE),
            state="awaiting_intent_selection",
            context=SessionContext(last_menu_sent_at="yesterday-ish"),
            last_activity_at=START - timedelta(seconds=10),
            expires_at=START + timedelta(minutes=14),
        )
    )

    h.manager.process_inbound(_inbound(h.repo, "Hi"))

    assert _outbound(h.repo)[-1].body == GLOBAL_MENU
    assert _menu_events(h.repo)[-1].metadata["template"] == "global.menu"
    assert _only_session(h).context.last_menu_sent_at == START.isoformat()


def test_unknown_message_id_raises_without_side_effects() -> None:
    h = _harness()

    with pytest.raises(NotFoundError):
        h.manager.process_inbound("msg_does_not_exist")

    assert h.sessions.list_sessions(agency_id=AGENCY_ID, limit=10) == []
    assert h.repo.list_audit_events(agency_id=AGENCY_ID, limit=10) == []
    assert _outbound(h.repo) == []


def test_session_validation_failure_aborts_before_reply() -> None:
    h = _harness()
    message_id = _inbound(h.repo, "Hello", from_phone="not-a-phone")

    with pytest.raises(ValidationError):
        h.manager.process_inbound(message_id)

    assert _outbound(h.repo) == []
    assert _menu_events(h.repo) == []


def test_delivery_error_propagates_and_skips_audit() -> None:
    repo = InMemoryMessageLogRepository()
    h = _harness(repo=repo, messenger=_ExplodingMessenger(repo))

    with pytest.raises(DeliverySendError) as exc_info:
        h.manager.process_inbound(_inbound(h.repo, "Hello"))

    assert exc_info.value.error_code == "http_503"
    assert _menu_events(h.repo) == []
    outbound = _outbound(h.repo)
    assert len(outbound) == 1
    assert outbound[0].delivery_state == "failed"

    session = _only_session(h)
    assert session.state == "awaiting_intent_selection"
    assert session.expires_at == START + timedelta(minutes=15)
    assert session.context.last_menu_sent_at is None


def test_failed_attempt_returned_by_messenger_still_audits() -> None:
    repo = InMemoryMessageLogRepository()
    h = _harness(repo=repo, messenger=StubOutboundMessenger(repository=repo, enabled=False))

    h.manager.process_inbound(_inbound(h.repo, "Hello"))

    assert _outbound(h.repo)[0].delivery_state == "failed"
    assert len(_menu_events(h.repo)) == 1


def test_concurrent_messages_from_one_sender_share_one_session() -> None:
    h = _harness()
    message_ids = [_inbound(h.repo, f"burst {index}") for index in range(12)]

    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(h.manager.process_inbound, message_ids))

    session = _only_session(h)
    assert session.state == "awaiting_intent_selection"
    events = _menu_events(h.repo)
    assert len(events) == len(message_ids)
    assert {value.metadata["session_id"] for value in events} == {session.session_id}


def test_sessions_are_keyed_by_agency_and_sender() -> None:
    h = _harness()
    h.repo.upsert_agency(agency_id="agency-second", name="Second Agency", sms_phone_number="+15550002222")

    h.manager.process_inbound(_inbound(h.repo, "a"))
    h.manager.process_inbound(_inbound(h.repo, "b", from_phone="+15551230000"))
    h.manager.process_inbound(_inbound(h.repo, "c", agency_id="agency-second"))

    assert len(h.sessions.list_sessions(agency_id=AGENCY_ID, limit=10)) == 2
    assert len(h.sessions.list_sessions(agency_id="agency-second", limit=10)) == 1
    # Each sender gets its own full menu; no cross-session rate limiting.
    assert [value.metadata["template"] for value in _menu_events(h.repo)] == ["global.menu", "global.menu"]


def test_menu_flow_against_sqlite_backends(tmp_path) -> None:
    database_url = f"sqlite:///{tmp_path / 'covertext.db'}"
    h = _harness(
        repo=SqlAlchemyMessageLogRepository(database_url),
        sessions=SqlAlchemySessionStore(database_url),
    )

    h.manager.process_inbound(_inbound(h.repo, "First"))
    h.clock.advance(seconds=30)
    h.manager.process_inbound(_inbound(h.repo, "Second"))
    h.clock.advance(seconds=31)
    h.manager.process_inbound(_inbound(h.repo, "Third"))

    session = _only_session(h)
    assert session.expires_at == START + timedelta(seconds=61, minutes=15)
    assert session.context.last_menu_sent_at == (START + timedelta(seconds=61)).isoformat()
    assert [value.body for value in _outbound(h.repo)] == [GLOBAL_MENU, GLOBAL_MENU_SHORT, GLOBAL_MENU]
    assert [value.metadata["template"] for value in _menu_events(h.repo)] == [
        "global.menu",
        "global.menu_short",
        "global.menu",
    ]
