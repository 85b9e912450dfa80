"""
Trigger authentication for sync runs.

Two mutually exclusive trigger shapes:
- Scheduler ("cron"): ``X-Cron-Secret`` compared with the stored secret
- Interactive ("manual"): ``Authorization: Bearer <session token>`` of an
  admin user, which yields that admin's dealer

A request carrying the cron header is judged on that header alone; a bad
secret never falls through to the bearer token.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AuthError, ConfigError, ErrorCode, ForbiddenException
from app.core.logging import get_logger
from app.core.security import decode_session_token, verify_cron_secret
from app.db.postgres.models import AdminUser
from app.db.postgres.repositories import (
    AdminUserRepository,
    DealerConfigRepository,
    InternalSecretRepository,
)

logger = get_logger(__name__)

TRIGGER_CRON = "cron"
TRIGGER_MANUAL = "manual"


@dataclass(frozen=True)
class TriggerContext:
    """Who asked for the run and for which dealer."""

    dealer_id: str
    trigger_source: str
    invoked_by_user_id: Optional[str] = None


# =============================================================================
# Dealer selection (scheduled runs)
# =============================================================================


class DealerSelectionStrategy:
    """Picks the dealer a scheduled run targets."""

    async def select(self, db: AsyncSession) -> str:
        raise NotImplementedError


class FirstEnabledDealerStrategy(DealerSelectionStrategy):
    """Single-tenant selection: the oldest enabled configuration."""

    async def select(self, db: AsyncSession) -> str:
        config = await DealerConfigRepository(db).first_enabled()
        if config is None:
            raise ConfigError(
                message="No enabled dealer configuration found for scheduled sync",
                step="auth",
            )
        return config.dealer_id


class FixedDealerStrategy(DealerSelectionStrategy):
    """Always targets one dealer (CLI --dealer-id)."""

    def __init__(self, dealer_id: str):
        self._dealer_id = dealer_id

    async def select(self, db: AsyncSession) -> str:
        return self._dealer_id


# =============================================================================
# Authenticator
# =============================================================================


def _is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
        return True
    except ValueError:
        return False


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class TriggerAuthenticator:
    """Turns request credentials into a TriggerContext."""

    def __init__(
        self,
        db: AsyncSession,
        dealer_selection: Optional[DealerSelectionStrategy] = None,
    ):
        self._db = db
        self._dealer_selection = dealer_selection or FirstEnabledDealerStrategy()
        self._secrets = InternalSecretRepository(db)
        self._admins = AdminUserRepository(db)

    async def authenticate(
        self,
        cron_secret: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> TriggerContext:
        """
        Authenticate a trigger.

        Args:
            cron_secret: Value of the X-Cron-Secret header, if present
            authorization: Value of the Authorization header, if present

        Returns:
            TriggerContext for the run

        Raises:
            AuthError: Invalid secret, invalid token, or no credential at all
            ForbiddenException: Valid session of a non-admin user
            ConfigError: No dealer available for a scheduled run
        """
        if cron_secret is not None:
            return await self.authenticate_cron(cron_secret)

        token = bearer_token(authorization)
        if token:
            admin = await self.resolve_admin(token)
            return TriggerContext(
                dealer_id=admin.dealer_id,
                trigger_source=TRIGGER_MANUAL,
                invoked_by_user_id=admin.id,
            )

        raise AuthError(
            message="Missing credentials: provide X-Cron-Secret or a bearer session token",
            details={"has_authorization_header": bool(authorization)},
        )

    async def authenticate_cron(self, presented: str) -> TriggerContext:
        stored = await self._secrets.get_value(settings.CRON_SECRET_NAME)
        if not verify_cron_secret(presented, stored or ""):
            logger.warning("Rejected scheduled trigger with an invalid cron secret")
            raise AuthError(
                message="Invalid cron secret",
                code=ErrorCode.INVALID_CRON_SECRET,
            )

        dealer_id = await self._dealer_selection.select(self._db)
        logger.info("Scheduled trigger accepted", extra={"dealer_id": dealer_id})
        return TriggerContext(dealer_id=dealer_id, trigger_source=TRIGGER_CRON)

    async def resolve_admin(self, token: str) -> AdminUser:
        """
        Resolve a session token to an admin with a dealer.

        Raises:
            AuthError: Token invalid or expired
            ForbiddenException: Not an admin, or admin without a dealer
        """
        payload = decode_session_token(token)
        subject = payload.get("sub") if payload else None
        if not subject:
            raise AuthError(
                message="Invalid or expired session token",
                code=ErrorCode.INVALID_SESSION_TOKEN,
            )

        admin = await self._admins.get(subject) if _is_uuid(subject) else None
        if admin is None:
            raise ForbiddenException("Admin access required", code=ErrorCode.NOT_AN_ADMIN)
        if not admin.dealer_id:
            raise ForbiddenException("Admin user is not linked to a dealer", code=ErrorCode.NOT_AN_ADMIN)
        return admin
