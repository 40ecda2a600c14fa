from gateway.models.user_session import UserSession

__all__ = [
    "UserSession",
]
