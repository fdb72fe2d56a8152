from __future__ import annotations

import logging
import time

from .conversation_manager import ConversationManager

logger = logging.getLogger(__name__)


def process_inbound_message_job(message_id: str, *, manager: ConversationManager) -> None:
    """Background unit scheduled once per accepted inbound message.

    Failures are logged and re-raised; retry and dead-lettering belong to the
    runner executing the job.
    """
    started = time.monotonic()
    logger.info("process_inbound_message started message_id=%s", message_id)
    try:
        manager.process_inbound(message_id)
    except Exception:
        logger.exception("process_inbound_message failed message_id=%s", message_id)
        raise
    logger.info(
        "process_inbound_message finished message_id=%s elapsed_ms=%d",
        message_id,
        int((time.monotonic() - started) * 1000),
    )
