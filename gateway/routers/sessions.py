from fastapi import APIRouter, Depends, HTTPException

from gateway.schemas.session import PurgeResponse, SessionResponse, SessionStatsResponse, SweeperStatusResponse
from gateway.services.runtime import SessionRuntime, get_runtime
from gateway.services.state_machine import TRACKED_STATES

router = APIRouter(tags=["sessions"])


@router.get("/sessions/stats", response_model=SessionStatsResponse)
def session_stats(runtime: SessionRuntime = Depends(get_runtime)):
    """Session counts per state."""
    states = runtime.store.count_by_state()
    return SessionStatsResponse(
        states=states,
        tracked=sum(states[state.value] for state in TRACKED_STATES),
        cached_active=runtime.cache.value,
    )


@router.get("/sessions/{user_id}", response_model=SessionResponse)
def get_session(user_id: str, runtime: SessionRuntime = Depends(get_runtime)):
    record = runtime.store.get(user_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Session {user_id} not found")

    return SessionResponse(
        user_id=record.user_id,
        state=record.state.value,
        prompted_at=record.prompted_at,
        last_interaction=record.last_interaction,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


@router.post("/sessions/purge", response_model=PurgeResponse)
def purge_sessions(runtime: SessionRuntime = Depends(get_runtime)):
    """Delete idle sessions older than the retention window now."""
    return PurgeResponse(deleted=runtime.retention.run_once())


@router.post("/sweeper/run")
async def run_sweeper(runtime: SessionRuntime = Depends(get_runtime)):
    """Run one expiry cycle immediately."""
    return await runtime.sweeper.run_cycle()


@router.get("/sweeper/status", response_model=SweeperStatusResponse)
def sweeper_status(runtime: SessionRuntime = Depends(get_runtime)):
    return SweeperStatusResponse(
        running=runtime.sweeper.is_running,
        retention_running=runtime.retention.is_running,
        cached_active=runtime.cache.value,
        last_summary=runtime.sweeper.last_summary,
    )
