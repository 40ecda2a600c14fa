from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class SessionResponse(BaseModel):
    user_id: str
    state: str
    prompted_at: Optional[datetime] = None
    last_interaction: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SessionStatsResponse(BaseModel):
    states: dict[str, int]
    tracked: int
    cached_active: int


class SweeperStatusResponse(BaseModel):
    running: bool
    retention_running: bool
    cached_active: int
    last_summary: Optional[dict] = None


class PurgeResponse(BaseModel):
    deleted: int
