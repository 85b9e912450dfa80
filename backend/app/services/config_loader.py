"""
Dealer feed configuration loading and normalization.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConfigError, ErrorCode
from app.core.logging import get_logger
from app.core.security import CredentialCipher, get_credential_cipher
from app.db.postgres.models import DealerApiConfig
from app.db.postgres.repositories import DealerConfigRepository

logger = get_logger(__name__)

# Suffix operators tend to paste along with the partner base URL
FUNCTIONS_SUFFIX = "/functions/v1"


@dataclass(frozen=True)
class FeedConfig:
    """Resolved, decrypted configuration for one run."""

    config_id: str
    dealer_id: str
    base_url: str
    api_key: str
    is_enabled: bool
    sync_interval_minutes: int

    def __repr__(self) -> str:
        return (
            f"FeedConfig(dealer_id={self.dealer_id!r}, base_url={self.base_url!r}, "
            f"api_key='***', is_enabled={self.is_enabled})"
        )


def normalize_endpoint_base(raw: Optional[str]) -> str:
    """
    Trim whitespace, trailing slashes and a pasted /functions/v1 suffix.

    Raises:
        ConfigError: The result is not an absolute http(s) URL
    """
    value = (raw or "").strip().rstrip("/")
    if value.endswith(FUNCTIONS_SUFFIX):
        value = value[: -len(FUNCTIONS_SUFFIX)].rstrip("/")

    parts = urlsplit(value)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(
            message="The configured base URL is not valid. Please check your settings.",
            code=ErrorCode.CONFIG_INVALID_URL,
            step="normalize_url",
            details={"configured_url": raw, "normalized_url": value},
        )
    return value


class ConfigLoader:
    """Resolves a dealer's feed base URL and decrypts its credential."""

    def __init__(self, db: AsyncSession, cipher: Optional[CredentialCipher] = None):
        self._configs = DealerConfigRepository(db)
        self._cipher = cipher or get_credential_cipher()

    async def get_record(self, dealer_id: str) -> DealerApiConfig:
        """
        Raises:
            ConfigError: No configuration exists for the dealer
        """
        config = await self._configs.get_by_dealer(dealer_id)
        if config is None:
            raise ConfigError(
                message="Unable to load dealer API configuration. Please check your settings.",
                details={"dealer_id": dealer_id},
            )
        return config

    async def load(self, dealer_id: str) -> FeedConfig:
        """
        Load and decrypt the configuration of one dealer.

        Args:
            dealer_id: Dealer whose feed is synced

        Returns:
            FeedConfig with the plaintext credential

        Raises:
            ConfigError: Missing or incomplete configuration, or invalid URL
            CredentialDecryptError: The stored credential cannot be decrypted
        """
        config = await self.get_record(dealer_id)

        missing = {
            "endpoint_base": not config.endpoint_base,
            "api_key": not config.api_key_encrypted,
        }
        if any(missing.values()):
            raise ConfigError(
                message="Configuration incomplete: save the partner base URL and API key first",
                details={"missing_fields": missing},
            )

        api_key = self._cipher.decrypt(config.api_key_encrypted)
        base_url = normalize_endpoint_base(config.endpoint_base)

        if not config.is_enabled:
            logger.info("Running sync for a disabled configuration", extra={"dealer_id": dealer_id})

        return FeedConfig(
            config_id=config.id,
            dealer_id=config.dealer_id,
            base_url=base_url,
            api_key=api_key,
            is_enabled=config.is_enabled,
            sync_interval_minutes=config.sync_interval_minutes,
        )
