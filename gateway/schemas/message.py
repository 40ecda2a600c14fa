from typing import Optional

from pydantic import AliasChoices, BaseModel, Field

BUTTON_MESSAGE_TYPES = {"buttons_response", "interactive", "list_response"}
BUTTON_BODIES = {"live_chat", "talk_to_us"}
BROADCAST_USER_ID = "status@broadcast"


class InboundMessageRequest(BaseModel):
    user_id: str = Field(validation_alias=AliasChoices("userId", "user_id", "from"), min_length=1)
    text: str = Field(default="", validation_alias=AliasChoices("text", "body", "message"))
    is_button_selection: bool = Field(
        default=False,
        validation_alias=AliasChoices("isButtonSelection", "is_button_selection"),
    )
    selection_payload: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("selectionPayload", "selection_payload", "selectedButtonId", "selectedRowId"),
    )
    message_type: str = Field(default="chat", validation_alias=AliasChoices("messageType", "message_type", "type"))
    has_media: bool = Field(default=False, validation_alias=AliasChoices("hasMedia", "has_media"))
    is_group: bool = Field(default=False, validation_alias=AliasChoices("isGroup", "is_group"))
    message_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageId", "message_id"))
    from_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("fromName", "from_name"))
    chat_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatName", "chat_name"))
    timestamp: Optional[int] = None

    @property
    def is_broadcast(self) -> bool:
        return self.user_id == BROADCAST_USER_ID

    @property
    def is_button(self) -> bool:
        if self.is_button_selection or self.selection_payload:
            return True
        if (self.message_type or "").lower() in BUTTON_MESSAGE_TYPES:
            return True
        return (self.text or "").strip().lower() in BUTTON_BODIES

    @property
    def selection(self) -> Optional[str]:
        return self.selection_payload or self.text

    def forward_payload(self) -> dict:
        return {
            "messageId": self.message_id,
            "from": self.user_id,
            "fromName": self.from_name or self.user_id,
            "body": self.text,
            "timestamp": self.timestamp,
            "isGroup": self.is_group,
            "chatName": self.chat_name,
            "type": self.message_type,
            "hasMedia": self.has_media,
        }


class InboundMessageResponse(BaseModel):
    success: bool
    ignored: bool = False
    state: Optional[str] = None
    action: Optional[str] = None
    replies: list[str] = []
    degraded: bool = False
    message: Optional[str] = None
