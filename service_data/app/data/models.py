"""
Data access models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BatchKind(str, Enum):
    """Deferred write kinds."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class BatchOperation:
    """A write queued while batch mode is active."""
    kind: BatchKind
    collection: str
    record_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    expand: Optional[List[str]] = field(default=None)


class ListOptions(BaseModel):
    """Query shape for a paginated list."""
    page: int = Field(1, ge=1, description="1-based page number")
    limit: int = Field(10, ge=1, description="Records per page")
    filter: Optional[str] = Field(None, description="Record store filter expression")
    sort: Optional[str] = Field(None, description="Record store sort expression")
    expand: Optional[List[str]] = Field(None, description="Relations to expand")


class PaginatedResult(BaseModel):
    """A page of records, as served from cache or the record store."""
    items: List[Dict[str, Any]] = Field(default_factory=list)
    total_items: int = 0
    total_pages: int = 0
    page: int = 1
    limit: int = 10
    cache_key: str
