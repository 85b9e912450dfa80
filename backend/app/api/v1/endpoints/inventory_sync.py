"""
Inventory sync endpoints.

Provides the sync trigger (scheduler or admin), run history, dashboard
status and partner feed configuration.
"""

from datetime import timedelta
from typing import Any, Dict, Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.schemas.inventory_sync import (
    ConfigSaveRequest,
    ConfigSummary,
    ProbeResponse,
    RunRequest,
    RunResponse,
    StatusOut,
    SyncRunDetail,
    SyncRunList,
    SyncRunOut,
)
from app.core.exceptions import (
    AuthError,
    ConfigError,
    DealerSyncException,
    ErrorCode,
    NotFoundException,
)
from app.core.logging import get_logger
from app.core.security import get_credential_cipher
from app.db.postgres.models import AdminUser, DealerApiConfig, utcnow
from app.db.postgres.repositories import DealerConfigRepository, SyncRunRepository
from app.db.postgres.session import get_db
from app.services.config_loader import normalize_endpoint_base
from app.services.inventory_sync_service import InventorySyncService, get_inventory_sync_service
from app.services.trigger_auth import TRIGGER_CRON, TriggerAuthenticator, bearer_token

router = APIRouter()
logger = get_logger(__name__)

# Stored ciphertexts shorter than this, or seeded placeholders, are not real keys
MIN_STORED_KEY_LENGTH = 40
PLACEHOLDER_PREFIX = "PLACEHOL"


# =============================================================================
# Dependencies
# =============================================================================


async def get_sync_service(db: AsyncSession = Depends(get_db)) -> InventorySyncService:
    return await get_inventory_sync_service(db)


async def get_trigger_authenticator(db: AsyncSession = Depends(get_db)) -> TriggerAuthenticator:
    return TriggerAuthenticator(db)


async def get_current_admin(
    authorization: Optional[str] = Header(None),
    authenticator: TriggerAuthenticator = Depends(get_trigger_authenticator),
) -> AdminUser:
    """
    Dependency resolving the bearer session to an admin with a dealer.

    Raises:
        401: Missing, invalid or expired session token
        403: Caller is not an admin
    """
    token = bearer_token(authorization)
    if not token:
        raise AuthError(
            message="Missing bearer session token",
            code=ErrorCode.INVALID_SESSION_TOKEN,
        )
    return await authenticator.resolve_admin(token)


def has_usable_key(config: Optional[DealerApiConfig]) -> bool:
    """True when a real encrypted credential is stored."""
    if config is None or not config.api_key_encrypted:
        return False
    stored = config.api_key_encrypted
    return len(stored) >= MIN_STORED_KEY_LENGTH and not stored.startswith(PLACEHOLDER_PREFIX)


def _config_summary(config: DealerApiConfig) -> ConfigSummary:
    return ConfigSummary(
        dealer_id=config.dealer_id,
        endpoint_base=config.endpoint_base,
        has_api_key=has_usable_key(config),
        is_enabled=config.is_enabled,
        sync_interval_minutes=config.sync_interval_minutes,
        last_sync_at=config.last_sync_at,
        updated_at=config.updated_at,
    )


# =============================================================================
# Trigger
# =============================================================================


@router.post(
    "/run",
    responses={
        200: {
            "model": Union[RunResponse, ProbeResponse],
            "description": "Live run summary, or the connectivity test result with test_only",
        },
    },
)
async def run_sync(
    payload: Optional[RunRequest] = None,
    x_cron_secret: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    authenticator: TriggerAuthenticator = Depends(get_trigger_authenticator),
    service: InventorySyncService = Depends(get_sync_service),
) -> Dict[str, Any]:
    """
    Trigger a sync run.

    Authenticate with ``X-Cron-Secret`` (scheduler) or
    ``Authorization: Bearer <token>`` (admin). With ``test_only`` the feed
    is probed for a single record and nothing is written.

    Returns:
        Live run summary, or the connectivity test result

    Raises:
        401: Invalid credentials
        400: Missing or invalid configuration
        500: Credential decryption failed
        502: Partner feed failure
    """
    trigger = await authenticator.authenticate(
        cron_secret=x_cron_secret,
        authorization=authorization,
    )
    test_only = payload.test_only if payload else False

    logger.info(
        "Sync triggered",
        extra={
            "dealer_id": trigger.dealer_id,
            "trigger_source": trigger.trigger_source,
            "test_only": test_only,
        },
    )
    return await service.run(trigger, test_only=test_only)


# =============================================================================
# History
# =============================================================================


@router.get("/runs", response_model=SyncRunList)
async def list_runs(
    limit: int = Query(50, ge=1, le=200),
    trigger_source: Optional[str] = Query(None, pattern="^(manual|cron)$"),
    status: Optional[str] = Query(None, pattern="^(pending|success|partial|failure)$"),
    admin: AdminUser = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Newest-first run history of the caller's dealer."""
    runs = await SyncRunRepository(db).list_for_dealer(
        admin.dealer_id,
        limit=limit,
        trigger_source=trigger_source,
        status=status,
    )
    return SyncRunList(
        items=[SyncRunOut.model_validate(run) for run in runs],
        total=len(runs),
    )


@router.get("/runs/{run_id}", response_model=SyncRunDetail)
async def get_run(
    run_id: UUID,
    admin: AdminUser = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """One run with its persisted errors."""
    run = await SyncRunRepository(db).get_with_errors(str(run_id))
    if run is None or run.dealer_id != admin.dealer_id:
        raise NotFoundException(f"Sync run {run_id} not found", resource_type="sync_run")
    return SyncRunDetail.model_validate(run)


@router.get("/status", response_model=StatusOut)
async def get_status(
    admin: AdminUser = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """Configuration summary, last runs and recent failures."""
    runs = SyncRunRepository(db)
    config = await DealerConfigRepository(db).get_by_dealer(admin.dealer_id)
    last_run = await runs.latest(admin.dealer_id)
    last_cron = await runs.latest(
        admin.dealer_id,
        trigger_source=TRIGGER_CRON,
        statuses=("success", "partial"),
    )
    failed = await runs.count_failed_since(admin.dealer_id, utcnow() - timedelta(hours=24))

    return StatusOut(
        dealer_id=admin.dealer_id,
        config=_config_summary(config) if config else None,
        last_run=SyncRunOut.model_validate(last_run) if last_run else None,
        last_successful_cron_run=SyncRunOut.model_validate(last_cron) if last_cron else None,
        failed_runs_24h=failed,
    )


# =============================================================================
# Configuration
# =============================================================================


@router.put("/config", response_model=ConfigSummary)
async def save_config(
    payload: ConfigSaveRequest,
    admin: AdminUser = Depends(get_current_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Save the partner feed configuration of the caller's dealer.

    The API key is encrypted before storage and never returned. It may be
    omitted when a key is already stored.

    Raises:
        400: Invalid URL, or no API key stored or supplied
        403: Caller is not an admin
    """
    endpoint_base = normalize_endpoint_base(payload.endpoint_base)
    configs = DealerConfigRepository(db)
    existing = await configs.get_by_dealer(admin.dealer_id)

    values: Dict[str, Any] = {
        "endpoint_base": endpoint_base,
        "is_enabled": payload.is_enabled,
        "sync_interval_minutes": payload.sync_interval_minutes,
        "updated_at": utcnow(),
    }

    if payload.api_key:
        cipher = get_credential_cipher()
        if not cipher.is_configured:
            raise DealerSyncException(
                message="API_ENCRYPTION_KEY is not configured",
                code=ErrorCode.CONFIG_ERROR,
                step="encrypt_key",
            )
        values["api_key_encrypted"] = cipher.encrypt(payload.api_key)
    elif not has_usable_key(existing):
        raise ConfigError(
            message="An API key is required",
            step="save_config",
            details={"missing_fields": {"endpoint_base": False, "api_key": True}},
        )

    config = await configs.save(admin.dealer_id, values)
    await db.commit()

    logger.info(
        "Partner feed configuration saved",
        extra={
            "dealer_id": admin.dealer_id,
            "key_rotated": bool(payload.api_key),
            "is_enabled": payload.is_enabled,
        },
    )
    return _config_summary(config)
