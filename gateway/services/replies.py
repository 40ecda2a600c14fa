"""Canned texts sent to chat participants."""

MSG_WELCOME = """👋 *Hello! How can I help you today?*

Please select an option by replying with the number:

*1️⃣ Talk To Us*
Contact our team

*2️⃣ Live Chat* (recommended for information)
Start chatting with our assistant

Reply with *1* or *2* to select your option."""

MSG_LIVE_CHAT_ENABLED = (
    "✅ Live Chat enabled! You can now chat with our assistant. How can I help you?\n\n"
    "💡 Tip: Type *{end_command}* to end Live Chat anytime."
)

MSG_TALK_TO_US_ACK = (
    "Thank you for your interest. Our team will contact you soon.\n\n"
    "If you don't hear back from our team,\n"
    "type 2️⃣ to start Live Chat with our assistant."
)

MSG_LIVE_CHAT_ENDED = (
    "✅ Live Chat ended.\n\n"
    "💡 Tip: Send a message anytime to start again!\n\n"
    "Type *1️⃣* to Talk To Us\n"
    "Type *2️⃣* to start Live Chat again."
)

_RESTART_HINT = (
    "🔄 *To start again:*\n"
    "Send any message or reply with:\n"
    "*1️⃣* - Talk To Us\n"
    "*2️⃣* - Live Chat (recommended for information)"
)

MSG_LIVE_CHAT_EXPIRED = (
    "⏰ *Session Expired*\n\n"
    "Your Live Chat session has been automatically ended due to inactivity ({minutes} minutes).\n\n"
    f"{_RESTART_HINT}\n\n"
    "Thank you for using our service! 😊"
)

MSG_TALK_TO_US_EXPIRED = (
    "⏰ *Session Expired*\n\n"
    'Your "Talk To Us" request has been automatically cleared due to inactivity ({minutes} minutes).\n\n'
    f"{_RESTART_HINT}\n\n"
    "Thank you! 😊"
)

_APOLOGY_HINT = (
    "Type *{end_command}* to end Live Chat, then\n"
    "type *1️⃣* to Talk To Us (we will reply as soon as possible)"
)

MSG_FORWARD_UNAVAILABLE = f"⚠️ Bot service temporarily unavailable. Please try again later.\n\n{_APOLOGY_HINT}"
MSG_FORWARD_TIMEOUT = f"⚠️ Response timeout. Please try again.\n\n{_APOLOGY_HINT}"


def format_minutes(minutes: float) -> str:
    if float(minutes).is_integer():
        return str(int(minutes))
    return f"{minutes:g}"


def live_chat_enabled(end_command: str) -> str:
    return MSG_LIVE_CHAT_ENABLED.format(end_command=end_command.upper())


def expiry_notice(state: str, minutes: float) -> str:
    template = MSG_LIVE_CHAT_EXPIRED if state == "live_chat" else MSG_TALK_TO_US_EXPIRED
    return template.format(minutes=format_minutes(minutes))


def forward_apology(kind: str, end_command: str) -> str:
    template = MSG_FORWARD_TIMEOUT if kind == "timeout" else MSG_FORWARD_UNAVAILABLE
    return template.format(end_command=end_command.upper())
