from fastapi import APIRouter, Depends

from gateway.schemas.message import InboundMessageRequest, InboundMessageResponse
from gateway.services.runtime import SessionRuntime, get_runtime
from gateway.services.session_service import handle_inbound_message

router = APIRouter(tags=["messages"])


@router.post("/messages/inbound", response_model=InboundMessageResponse)
async def inbound_message(request: InboundMessageRequest, runtime: SessionRuntime = Depends(get_runtime)):
    """Handle one inbound chat message from the transport."""
    outcome = await handle_inbound_message(runtime, request)

    if outcome.ignored:
        return InboundMessageResponse(success=True, ignored=True, message="Group or broadcast message ignored")

    return InboundMessageResponse(
        success=True,
        state=outcome.state.value,
        action=outcome.action.value if outcome.action else None,
        replies=outcome.replies,
        degraded=outcome.degraded,
        message=f"Forwarder {outcome.forward_error}" if outcome.forward_error else None,
    )
