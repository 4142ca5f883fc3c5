from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel


class PresenceResponse(BaseModel):
    """Effective presence (stale heartbeats read as offline)."""
    user_id: str
    is_online: bool
    last_seen_at: Optional[datetime] = None


class PresenceMapResponse(BaseModel):
    presence: Dict[str, PresenceResponse]
