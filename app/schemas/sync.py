"""
Bulk sync request/response schemas
"""
from pydantic import Field
from typing import Optional, List
from datetime import datetime

from app.schemas.search import CamelModel


class SyncOptions(CamelModel):
    """Body of POST /movies/sync/start (every field optional)"""
    batch_size: int = Field(100, ge=1, le=1000, description="Movies per bulk request")
    delete_existing: bool = Field(False, description="Drop and recreate the index first")
    sync_ratings: bool = Field(True, description="Recompute aggregates from ratings while syncing")


class SyncStatus(CamelModel):
    """Progress snapshot of one sync job"""
    sync_id: str
    is_running: bool
    progress: int
    total_records: int
    processed_records: int
    current_operation: str
    failed_documents: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    errors: List[str] = Field(default_factory=list)


class SyncStartResponse(CamelModel):
    success: bool = True
    message: str
    sync_id: str
    options: SyncOptions
    timestamp: datetime


class SyncStatusResponse(CamelModel):
    success: bool = True
    data: SyncStatus
    message: str
