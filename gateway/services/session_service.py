from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from gateway.logging_config import get_logger
from gateway.schemas.message import InboundMessageRequest
from gateway.services import replies
from gateway.services.forwarder import ForwarderError
from gateway.services.runtime import SessionRuntime
from gateway.services.session_store import transient_record
from gateway.services.state_machine import (
    ActionKind,
    EndCommand,
    InboundMessage,
    SessionRecord,
    SessionState,
    Transition,
    decide,
    is_end_command,
)

logger = get_logger("session_service")


@dataclass
class InboundOutcome:
    ignored: bool = False
    state: Optional[SessionState] = None
    action: Optional[ActionKind] = None
    replies: list[str] = field(default_factory=list)
    degraded: bool = False
    forward_error: Optional[str] = None


def load_session(runtime: SessionRuntime, user_id: str, now: datetime) -> SessionRecord:
    """getOrCreate, falling back to a transient idle record when the store is down."""
    try:
        return runtime.store.get_or_create(user_id, now=now)
    except SQLAlchemyError as e:
        logger.error(
            "Session store unavailable, using transient session",
            extra={"context": {"user_id": user_id, "error": str(e)}},
        )
        return transient_record(user_id, now)


def persist_transition(runtime: SessionRuntime, transition: Transition, now: datetime) -> bool:
    record = transition.record
    if not record.persisted or not transition.changes:
        return True
    try:
        runtime.store.apply_partial(record.user_id, transition.changes, now=now)
        return True
    except SQLAlchemyError as e:
        logger.error(
            "Failed to persist session change",
            extra={"context": {"user_id": record.user_id, "changes": list(transition.changes), "error": str(e)}},
        )
        return False


def build_event(message: InboundMessageRequest, record: SessionRecord, end_command: str):
    if record.state == SessionState.LIVE_CHAT and is_end_command(message.text, end_command):
        return EndCommand(text=message.text)
    is_button = message.is_button
    return InboundMessage(
        text=message.text,
        is_button=is_button,
        payload=message.selection if is_button else None,
    )


async def _send(runtime: SessionRuntime, user_id: str, text: str, outcome: InboundOutcome) -> None:
    try:
        sent = await runtime.dispatcher.send(user_id, text)
    except Exception as e:
        logger.error(f"Dispatcher raised for {user_id}: {e}")
        sent = False
    if sent:
        outcome.replies.append(text)
    else:
        logger.warning("Reply not delivered", extra={"context": {"user_id": user_id}})


async def _forward(runtime: SessionRuntime, message: InboundMessageRequest, outcome: InboundOutcome) -> None:
    try:
        reply = await runtime.forwarder.forward(message.forward_payload())
    except ForwarderError as e:
        logger.error(
            "Forwarding to automation webhook failed",
            extra={"context": {"user_id": message.user_id, "kind": e.kind, "error": e.detail}},
        )
        outcome.forward_error = e.kind
        await _send(runtime, message.user_id, replies.forward_apology(e.kind, runtime.settings.end_command), outcome)
        return
    except Exception as e:
        logger.error(f"Unexpected forwarder error for {message.user_id}: {e}", exc_info=True)
        outcome.forward_error = "unavailable"
        await _send(runtime, message.user_id, replies.forward_apology("unavailable", runtime.settings.end_command), outcome)
        return

    if reply:
        await _send(runtime, message.user_id, reply, outcome)


async def handle_inbound_message(
    runtime: SessionRuntime,
    message: InboundMessageRequest,
    now: Optional[datetime] = None,
) -> InboundOutcome:
    """Route one inbound chat message through the session state machine."""
    if message.is_group or message.is_broadcast:
        return InboundOutcome(ignored=True)

    now = now or datetime.now(timezone.utc)
    record = load_session(runtime, message.user_id, now)
    event = build_event(message, record, runtime.settings.end_command)
    transition = decide(record, event, now, runtime.timeouts)

    persist_transition(runtime, transition, now)
    runtime.cache.record_transition(transition)
    if transition.entered_tracked:
        runtime.sweeper.start()

    if transition.record.state != record.state:
        logger.info(
            f"Session {message.user_id}: {record.state.value} -> {transition.record.state.value}",
            extra={"context": {"user_id": message.user_id, "persisted": record.persisted}},
        )

    outcome = InboundOutcome(
        state=transition.record.state,
        action=transition.action.kind if transition.action else None,
        degraded=not record.persisted,
    )

    action = transition.action
    if action is None:
        return outcome
    if action.kind == ActionKind.FORWARD:
        await _forward(runtime, message, outcome)
    else:
        await _send(runtime, message.user_id, action.text, outcome)
    return outcome
