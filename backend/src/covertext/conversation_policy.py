from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from .message_templates import render_template
from .models import ConversationEvent, ConversationState, MenuTemplateKey
from .sessions import ConversationSessionRecord, SessionContext

SESSION_EXPIRY = timedelta(minutes=15)
MENU_RATE_LIMIT = timedelta(seconds=60)

INITIAL_STATE: ConversationState = "awaiting_intent_selection"

# (current state, event) -> next state. ``None`` is a session that has never
# been through a cycle.
_TRANSITIONS: dict[tuple[ConversationState | None, ConversationEvent], ConversationState] = {
    (None, "inbound_message"): "awaiting_intent_selection",
    ("awaiting_intent_selection", "inbound_message"): "awaiting_intent_selection",
}


@dataclass(frozen=True)
class MenuDecision:
    template_key: MenuTemplateKey
    body: str
    anchors_rate_limit: bool


def next_state(current: ConversationState | str | None, event: ConversationEvent) -> ConversationState:
    """Return the state a session moves to when ``event`` happens.

    States missing from the table (including values left behind by older
    releases) fall back to the initial state.
    """
    return _TRANSITIONS.get((current, event), INITIAL_STATE)  # type: ignore[arg-type]


def session_expired(session: ConversationSessionRecord, *, now: datetime) -> bool:
    return session.persisted and session.expires_at is not None and session.expires_at < now


def select_menu(
    context: SessionContext,
    *,
    now: datetime,
    rate_limit: timedelta = MENU_RATE_LIMIT,
) -> MenuDecision:
    # Only full menu sends move the anchor; an unreadable anchor counts as no send.
    last_sent = context.menu_sent_at()
    if last_sent is not None and now - last_sent < rate_limit:
        return MenuDecision(
            template_key="global.menu_short",
            body=render_template("global.menu_short"),
            anchors_rate_limit=False,
        )
    return MenuDecision(
        template_key="global.menu",
        body=render_template("global.menu"),
        anchors_rate_limit=True,
    )
