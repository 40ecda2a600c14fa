from gateway.schemas.message import InboundMessageRequest, InboundMessageResponse
from gateway.schemas.session import PurgeResponse, SessionResponse, SessionStatsResponse, SweeperStatusResponse

__all__ = [
    "InboundMessageRequest",
    "InboundMessageResponse",
    "PurgeResponse",
    "SessionResponse",
    "SessionStatsResponse",
    "SweeperStatusResponse",
]
