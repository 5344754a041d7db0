from __future__ import annotations

from typing import Optional

from codebot.logging import get_logger, set_correlation_id
from codebot.service import notices
from codebot.service.auth import AuthenticationGate, GateOutcome
from codebot.service.orchestrator import ConversationOrchestrator
from codebot.service.transport import Transport

logger = get_logger(__name__)


class MessagePipeline:
    """Inbound chat message -> gate -> orchestrator -> outbound reply.

    ``on_message`` is what the transport calls for every text message. It
    never raises, so one bad update cannot stop the polling loop.
    """

    def __init__(
        self,
        gate: AuthenticationGate,
        orchestrator: ConversationOrchestrator,
        transport: Transport,
    ) -> None:
        self.gate = gate
        self.orchestrator = orchestrator
        self.transport = transport

    async def on_message(
        self, chat_id: str, text: str, display_name: Optional[str] = None
    ) -> Optional[str]:
        chat_id = str(chat_id)
        set_correlation_id()
        try:
            outcome: GateOutcome = await self.gate.authenticate(chat_id, display_name)
            if not outcome.proceed or outcome.user is None:
                if outcome.error is not None:
                    logger.info(
                        "message_blocked",
                        state=outcome.state.value,
                        error_code=outcome.error.error_code,
                    )
                return None
            logger.info(
                "message_accepted",
                user_id=outcome.user.id,
                remaining_quota=outcome.remaining_quota,
            )
            reply = await self.orchestrator.handle(chat_id, text, outcome.user)
        except Exception as exc:
            logger.error("message_pipeline_failed", chat_id=chat_id, error=str(exc))
            reply = notices.GENERIC_ERROR
        try:
            await self.transport.send_text(chat_id, reply)
        except Exception as exc:
            logger.error("reply_delivery_failed", chat_id=chat_id, error=str(exc))
        return reply
