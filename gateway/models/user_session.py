import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Text, Uuid

from gateway.database import Base


class UserSession(Base):
    __tablename__ = "user_sessions"
    __table_args__ = (
        CheckConstraint(
            "state IN ('idle', 'prompted', 'talk_to_us', 'live_chat')",
            name="ck_user_sessions_state",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, unique=True, index=True)  # e.g. 923001234567@c.us
    state = Column(Text, nullable=False, default="idle")  # idle, prompted, talk_to_us, live_chat
    prompted_at = Column(DateTime(timezone=True))
    last_interaction = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
