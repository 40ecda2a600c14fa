"""Per-user session state machine.

`decide` is pure: it takes the current record, one event and the clock, and
returns the next record plus at most one outbound action. Persistence and
delivery are the caller's job.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from gateway.services import replies


class SessionState(str, Enum):
    IDLE = "idle"
    PROMPTED = "prompted"
    TALK_TO_US = "talk_to_us"
    LIVE_CHAT = "live_chat"


TRACKED_STATES = (SessionState.TALK_TO_US, SessionState.LIVE_CHAT)

PERSISTED_FIELDS = ("state", "prompted_at", "last_interaction")


class Selection(str, Enum):
    LIVE_CHAT = "live_chat"
    TALK_TO_US = "talk_to_us"
    NONE = "none"


class ActionKind(str, Enum):
    SEND_TEXT = "send_text"
    FORWARD = "forward"


@dataclass(frozen=True)
class SessionRecord:
    user_id: str
    state: SessionState
    last_interaction: datetime
    prompted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # last_interaction as stored before the current event refreshed it
    previous_interaction: Optional[datetime] = None
    persisted: bool = True

    @property
    def is_tracked(self) -> bool:
        return self.state in TRACKED_STATES

    @property
    def idle_since(self) -> datetime:
        return self.previous_interaction or self.last_interaction


@dataclass(frozen=True)
class InboundMessage:
    text: str = ""
    is_button: bool = False
    payload: Optional[str] = None


@dataclass(frozen=True)
class EndCommand:
    text: str = "e"


@dataclass(frozen=True)
class TimeoutTick:
    category: SessionState
    cutoff: datetime


Event = Union[InboundMessage, EndCommand, TimeoutTick]


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    text: Optional[str] = None


@dataclass(frozen=True)
class Timeouts:
    live_chat: timedelta
    talk_to_us: timedelta
    prompt_rate_limit: timedelta
    end_command: str = "e"

    @classmethod
    def from_settings(cls, settings) -> "Timeouts":
        return cls(
            live_chat=settings.live_chat_timeout,
            talk_to_us=settings.talk_to_us_timeout,
            prompt_rate_limit=settings.prompt_rate_limit,
            end_command=settings.end_command,
        )

    def for_state(self, state: SessionState) -> timedelta:
        if state == SessionState.LIVE_CHAT:
            return self.live_chat
        if state == SessionState.TALK_TO_US:
            return self.talk_to_us
        raise ValueError(f"No inactivity timeout for state {state.value}")


@dataclass(frozen=True)
class Transition:
    previous: SessionRecord
    record: SessionRecord
    action: Optional[Action] = None
    changes: dict = field(default_factory=dict)

    @property
    def entered_tracked(self) -> bool:
        return self.record.is_tracked and not self.previous.is_tracked

    @property
    def left_tracked(self) -> bool:
        return self.previous.is_tracked and not self.record.is_tracked


@dataclass(frozen=True)
class SelectionRule:
    selection: Selection
    payload_markers: tuple[str, ...]
    text_markers: tuple[str, ...]

    def matches(self, text: str, payload: str) -> bool:
        if payload and any(marker in payload for marker in self.payload_markers):
            return True
        return any(marker in text for marker in self.text_markers)


# Checked in order, first match wins
SELECTION_RULES = (
    SelectionRule(
        Selection.LIVE_CHAT,
        payload_markers=("live_chat", "live chat"),
        text_markers=("live chat", "live_chat", "2"),
    ),
    SelectionRule(
        Selection.TALK_TO_US,
        payload_markers=("talk_to_us", "talk to us"),
        text_markers=("talk to us", "talk_to_us", "1"),
    ),
)


def classify_selection(text: Optional[str], payload: Optional[str] = None) -> Selection:
    """Match inbound text (and an optional button payload) against the selection rules."""
    normalized_text = (text or "").strip().lower()
    normalized_payload = (payload or "").strip().lower()
    for rule in SELECTION_RULES:
        if rule.matches(normalized_text, normalized_payload):
            return rule.selection
    return Selection.NONE


def is_end_command(text: Optional[str], end_command: str = "e") -> bool:
    return (text or "").strip().lower() == end_command.lower()


def expiry_fields() -> dict:
    """Fields written when the sweeper expires a tracked session."""
    return {"state": SessionState.IDLE}


def _prompt_window_elapsed(record: SessionRecord, now: datetime, window: timedelta) -> bool:
    if record.prompted_at is None:
        return True
    return now - record.prompted_at >= window


def _finish(previous: SessionRecord, updates: dict, action: Optional[Action] = None) -> Transition:
    record = replace(previous, **updates)
    changes = {
        name: getattr(record, name)
        for name in PERSISTED_FIELDS
        if name in updates and getattr(previous, name) != getattr(record, name)
    }
    return Transition(previous=previous, record=record, action=action, changes=changes)


def _touch(record: SessionRecord, now: datetime) -> datetime:
    return max(record.last_interaction, now)


def _select(record: SessionRecord, selection: Selection, now: datetime, timeouts: Timeouts) -> Transition:
    if selection == Selection.LIVE_CHAT:
        return _finish(
            record,
            {"state": SessionState.LIVE_CHAT, "prompted_at": None, "last_interaction": _touch(record, now)},
            Action(ActionKind.SEND_TEXT, replies.live_chat_enabled(timeouts.end_command)),
        )
    return _finish(
        record,
        {"state": SessionState.TALK_TO_US, "prompted_at": now, "last_interaction": _touch(record, now)},
        Action(ActionKind.SEND_TEXT, replies.MSG_TALK_TO_US_ACK),
    )


def _expire_inline(record: SessionRecord, now: datetime, timeouts: Timeouts) -> Transition:
    minutes = timeouts.for_state(record.state).total_seconds() / 60
    return _finish(
        record,
        {"state": SessionState.IDLE, "prompted_at": now, "last_interaction": _touch(record, now)},
        Action(ActionKind.SEND_TEXT, replies.expiry_notice(record.state.value, minutes)),
    )


def _on_message(record: SessionRecord, event: InboundMessage, now: datetime, timeouts: Timeouts) -> Transition:
    touched = {"last_interaction": _touch(record, now)}

    if record.state == SessionState.LIVE_CHAT:
        if is_end_command(event.text, timeouts.end_command):
            return decide(record, EndCommand(text=event.text), now, timeouts)
        if now - record.idle_since > timeouts.live_chat:
            return _expire_inline(record, now, timeouts)
        return _finish(record, touched, Action(ActionKind.FORWARD))

    selection = classify_selection(event.text, event.payload if event.is_button else None)
    if selection != Selection.NONE:
        return _select(record, selection, now, timeouts)

    if record.state == SessionState.TALK_TO_US:
        if now - record.idle_since > timeouts.talk_to_us:
            return _expire_inline(record, now, timeouts)
        return _finish(record, touched)

    if _prompt_window_elapsed(record, now, timeouts.prompt_rate_limit):
        return _finish(
            record,
            {"state": SessionState.PROMPTED, "prompted_at": now, **touched},
            Action(ActionKind.SEND_TEXT, replies.MSG_WELCOME),
        )
    return _finish(record, touched)


def _on_timeout(record: SessionRecord, event: TimeoutTick, timeouts: Timeouts) -> Transition:
    if record.state != event.category or event.category not in TRACKED_STATES:
        return _finish(record, {})
    if record.last_interaction >= event.cutoff:
        return _finish(record, {})
    minutes = timeouts.for_state(record.state).total_seconds() / 60
    return _finish(
        record,
        expiry_fields(),
        Action(ActionKind.SEND_TEXT, replies.expiry_notice(record.state.value, minutes)),
    )


def decide(record: SessionRecord, event: Event, now: datetime, timeouts: Timeouts) -> Transition:
    """Compute the next session record and outbound action for one event."""
    if isinstance(event, TimeoutTick):
        return _on_timeout(record, event, timeouts)

    if isinstance(event, EndCommand):
        if record.state != SessionState.LIVE_CHAT:
            return _on_message(record, InboundMessage(text=event.text), now, timeouts)
        return _finish(
            record,
            {"state": SessionState.IDLE, "prompted_at": None, "last_interaction": _touch(record, now)},
            Action(ActionKind.SEND_TEXT, replies.MSG_LIVE_CHAT_ENDED),
        )

    return _on_message(record, event, now, timeouts)
