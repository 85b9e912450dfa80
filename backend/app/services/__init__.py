"""
Services module for DealerSync.

This module contains the inventory synchronization pipeline: configuration
loading, the partner feed client, photo mirroring, reconciliation, run
tracking, trigger authentication and the orchestrating service.
"""

from app.services.object_storage import (
    InMemoryObjectStorage,
    ObjectStorage,
    StorageError,
    SupabaseStorage,
    close_object_storage,
    get_object_storage,
)
from app.services.feed_client import (
    DetectedFeatures,
    FeedClient,
    FeedPage,
    FeedSnapshot,
    MediaItem,
    Pagination,
    RemoteVehicle,
)
from app.services.photo_mirror import MirrorResult, PhotoMirror
from app.services.config_loader import ConfigLoader, FeedConfig, normalize_endpoint_base
from app.services.reconciliation import ReconcileStats, ReconciliationEngine, RecordError
from app.services.run_tracker import RunTracker
from app.services.trigger_auth import (
    DealerSelectionStrategy,
    FirstEnabledDealerStrategy,
    FixedDealerStrategy,
    TriggerAuthenticator,
    TriggerContext,
)
from app.services.inventory_sync_service import (
    InventorySyncService,
    get_inventory_sync_service,
)

__all__ = [
    # Object storage
    "InMemoryObjectStorage",
    "ObjectStorage",
    "StorageError",
    "SupabaseStorage",
    "close_object_storage",
    "get_object_storage",
    # Partner feed
    "DetectedFeatures",
    "FeedClient",
    "FeedPage",
    "FeedSnapshot",
    "MediaItem",
    "Pagination",
    "RemoteVehicle",
    # Photos
    "MirrorResult",
    "PhotoMirror",
    # Configuration
    "ConfigLoader",
    "FeedConfig",
    "normalize_endpoint_base",
    # Reconciliation
    "ReconcileStats",
    "ReconciliationEngine",
    "RecordError",
    "RunTracker",
    # Triggers
    "DealerSelectionStrategy",
    "FirstEnabledDealerStrategy",
    "FixedDealerStrategy",
    "TriggerAuthenticator",
    "TriggerContext",
    # Orchestration
    "InventorySyncService",
    "get_inventory_sync_service",
]
