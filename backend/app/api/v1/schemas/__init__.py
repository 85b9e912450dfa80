# Schemas module
from app.api.v1.schemas.inventory_sync import (
    ConfigSaveRequest,
    ConfigSummary,
    RunErrorItem,
    RunRequest,
    RunResponse,
    StatusOut,
    SyncErrorOut,
    SyncRunDetail,
    SyncRunList,
    SyncRunOut,
    ProbeResponse,
)

__all__ = [
    "ConfigSaveRequest",
    "ConfigSummary",
    "RunErrorItem",
    "RunRequest",
    "RunResponse",
    "StatusOut",
    "SyncErrorOut",
    "SyncRunDetail",
    "SyncRunList",
    "SyncRunOut",
    "ProbeResponse",
]
