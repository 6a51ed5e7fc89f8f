"""
Cache coherence message models.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class SyncAction(str, Enum):
    """Cache mutations propagated to peer nodes."""
    SET = "set"
    DELETE = "delete"
    INVALIDATE = "invalidate"


class CacheSyncMessage(BaseModel):
    """A single cache mutation, as broadcast to peer nodes."""
    action: SyncAction
    key: str
    payload: Any = None
    expires_at: Optional[int] = Field(None, description="Epoch milliseconds, 0 for no expiry")
    origin_node_id: str
