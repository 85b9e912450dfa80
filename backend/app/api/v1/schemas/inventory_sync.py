"""
Inventory sync schemas.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class RunRequest(BaseModel):
    """Schema for a sync trigger request body."""

    test_only: bool = Field(False, description="Fetch a single record and stop")

    class Config:
        json_schema_extra = {"example": {"test_only": False}}


class RunErrorItem(BaseModel):
    """A per-record error echoed in a run response."""

    type: str
    message: str
    vin: Optional[str] = None


class RunResponse(BaseModel):
    """Schema for a completed live run."""

    success: bool
    status: str = Field(..., description="success or partial")
    vehicles_synced: int
    records_created: int
    records_updated: int
    records_unchanged: int
    records_disabled: int
    photos_copied: int
    photos_cleaned_up: int
    errors: List[RunErrorItem] = Field(default_factory=list, description="First errors of the run")
    error_count: int
    duration_ms: int
    sync_run_id: Optional[str]
    trigger_source: str
    dealer_id: str


class ProbeResponse(BaseModel):
    """Schema for a connectivity test."""

    success: bool
    message: str
    vehicle_count: int
    pagination: Dict[str, Any]


class SyncErrorOut(BaseModel):
    """Schema for a persisted sync error."""

    id: int
    error_type: str
    error_message: str
    vin: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SyncRunOut(BaseModel):
    """Schema for a sync run history entry."""

    id: str
    dealer_id: str
    status: str
    trigger_source: str
    invoked_by_user_id: Optional[str] = None
    records_created: int
    records_updated: int
    records_unchanged: int
    records_disabled: int
    total_records_processed: int
    error_count: int
    photos_copied: int
    photos_cleaned_up: int
    duration_ms: Optional[int] = None
    started_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SyncRunDetail(SyncRunOut):
    """Schema for one run including its persisted errors."""

    errors: List[SyncErrorOut] = Field(default_factory=list)


class SyncRunList(BaseModel):
    items: List[SyncRunOut]
    total: int


class ConfigSaveRequest(BaseModel):
    """Schema for saving the partner feed configuration."""

    endpoint_base: str = Field(..., min_length=1, description="Partner feed base URL")
    api_key: Optional[str] = Field(
        None,
        min_length=10,
        description="Partner API key; optional when one is already stored",
    )
    is_enabled: bool = True
    sync_interval_minutes: int = Field(15, ge=5, le=1440)

    @field_validator("endpoint_base", "api_key")
    @classmethod
    def strip_whitespace(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if isinstance(v, str) else v

    class Config:
        json_schema_extra = {
            "example": {
                "endpoint_base": "https://partner.example.com",
                "api_key": "pk_live_0123456789",
                "is_enabled": True,
                "sync_interval_minutes": 15,
            }
        }


class ConfigSummary(BaseModel):
    """Stored configuration without the credential."""

    dealer_id: str
    endpoint_base: Optional[str] = None
    has_api_key: bool
    is_enabled: bool
    sync_interval_minutes: int
    last_sync_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StatusOut(BaseModel):
    """Sync dashboard status."""

    dealer_id: str
    config: Optional[ConfigSummary] = None
    last_run: Optional[SyncRunOut] = None
    last_successful_cron_run: Optional[SyncRunOut] = None
    failed_runs_24h: int
