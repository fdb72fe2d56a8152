from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable

from .conversation_policy import (
    INITIAL_STATE,
    MENU_RATE_LIMIT,
    SESSION_EXPIRY,
    next_state,
    select_menu,
    session_expired,
)
from .message_log import MessageLogRepository
from .messenger import OutboundMessenger, mask_phone
from .sessions import SessionContext, SessionStore

logger = logging.getLogger(__name__)

MENU_SENT_EVENT = "conversation.menu_sent"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ConversationManager:
    """Runs one inbound-message cycle: session upkeep, menu reply, audit event.

    The manager does not retry. Errors from loading the message, saving the
    session or sending the reply propagate to whatever scheduled the cycle.
    """

    def __init__(
        self,
        *,
        sessions: SessionStore,
        message_log: MessageLogRepository,
        messenger: OutboundMessenger,
        clock: Callable[[], datetime] = _now_utc,
        session_expiry: timedelta = SESSION_EXPIRY,
        menu_rate_limit: timedelta = MENU_RATE_LIMIT,
    ) -> None:
        self._sessions = sessions
        self._message_log = message_log
        self._messenger = messenger
        self._clock = clock
        self._session_expiry = session_expiry
        self._menu_rate_limit = menu_rate_limit

    def process_inbound(self, message_id: str) -> None:
        message = self._message_log.get_message(message_id)
        agency = self._message_log.get_agency(message.agency_id)
        now = self._clock()

        session = self._sessions.find_or_create(agency_id=message.agency_id, from_phone=message.from_phone)
        if session_expired(session, now=now):
            logger.info(
                "session %s expired at %s; clearing context",
                session.session_id,
                session.expires_at.isoformat() if session.expires_at else None,
            )
            session = replace(session, context=SessionContext(), state=INITIAL_STATE)

        session = self._sessions.save(
            replace(
                session,
                state=next_state(session.state, "inbound_message"),
                last_activity_at=now,
                expires_at=now + self._session_expiry,
            )
        )

        decision = select_menu(session.context, now=now, rate_limit=self._menu_rate_limit)
        logger.info(
            "sending %s to %s for agency %s",
            decision.template_key,
            mask_phone(message.from_phone),
            agency.agency_id,
        )
        self._messenger.send_sms(agency=agency, to_phone=message.from_phone, body=decision.body)
        if decision.anchors_rate_limit:
            session = self._sessions.save(replace(session, context=session.context.with_menu_sent_at(now)))

        self._message_log.record_audit_event(
            agency_id=message.agency_id,
            event_type=MENU_SENT_EVENT,
            metadata={
                "message_id": message.message_id,
                "template": decision.template_key,
                "session_id": session.session_id,
            },
        )
