"""
API Key Service - Generation and validation of service API keys.

NO DICTIONARIES - All data uses typed dataclasses.

Keys look like agk_{env}_{suffix}. Only an Argon2id hash is stored; the first
20 characters are kept in clear as the lookup prefix.
"""

import base64
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from autogift.db.models import APIKey
from autogift.exceptions import AuthenticationError
from autogift.observability.logging import get_logger

logger = get_logger(__name__)

KEY_PREFIX = "agk_"
KEY_PREFIX_LENGTH = 20

PERMISSION_READ = "gifting:read"
PERMISSION_WRITE = "gifting:write"
PERMISSION_SCHEDULER = "gifting:scheduler"

DEFAULT_PERMISSIONS = (PERMISSION_READ, PERMISSION_WRITE)
ALL_PERMISSIONS = (PERMISSION_READ, PERMISSION_WRITE, PERMISSION_SCHEDULER)


@dataclass(frozen=True)
class APIKeyData:
    """API key metadata (never the key itself)."""

    key_id: UUID
    name: str
    key_prefix: str
    environment: str
    permissions: tuple[str, ...]
    status: str
    created_at: datetime
    expires_at: datetime | None
    last_used_at: datetime | None


@dataclass(frozen=True)
class GeneratedAPIKey:
    """Newly generated API key. The plaintext is shown once."""

    key_id: UUID
    plaintext_key: str
    key_prefix: str
    name: str
    environment: str
    permissions: tuple[str, ...]
    created_at: datetime
    expires_at: datetime | None


def _to_data(api_key: APIKey) -> APIKeyData:
    return APIKeyData(
        key_id=api_key.id,
        name=api_key.name,
        key_prefix=api_key.key_prefix,
        environment=api_key.environment,
        permissions=tuple(api_key.permissions),
        status=api_key.status,
        created_at=api_key.created_at,
        expires_at=api_key.expires_at,
        last_used_at=api_key.last_used_at,
    )


class APIKeyService:
    """Service for API key management."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.password_hasher = PasswordHasher()

    def generate_api_key(self, environment: str = "live") -> tuple[str, str, str]:
        """
        Generate a new API key.

        Returns:
            tuple: (plaintext_key, key_hash, key_prefix)
        """
        key_suffix = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")
        plaintext_key = f"{KEY_PREFIX}{environment}_{key_suffix}"
        key_prefix = plaintext_key[:KEY_PREFIX_LENGTH]
        key_hash = self.password_hasher.hash(plaintext_key)
        return plaintext_key, key_hash, key_prefix

    async def create_api_key(
        self,
        name: str,
        environment: str = "live",
        permissions: list[str] | None = None,
        expires_in_days: int | None = None,
    ) -> GeneratedAPIKey:
        """
        Create a new API key and store its hash.

        Args:
            name: Human-readable name (e.g., "Scheduler")
            environment: "test" or "live"
            permissions: Permission strings; defaults to read + write
            expires_in_days: Optional expiration (None = never expires)
        """
        granted = list(permissions) if permissions is not None else list(DEFAULT_PERMISSIONS)
        unknown = sorted(set(granted) - set(ALL_PERMISSIONS))
        if unknown:
            raise ValueError(f"Unknown permissions: {', '.join(unknown)}")

        plaintext_key, key_hash, key_prefix = self.generate_api_key(environment)

        expires_at = None
        if expires_in_days is not None:
            expires_at = datetime.now(UTC) + timedelta(days=expires_in_days)

        api_key = APIKey(
            key_hash=key_hash,
            key_prefix=key_prefix,
            name=name,
            environment=environment,
            permissions=granted,
            expires_at=expires_at,
            status="active",
        )
        self.db.add(api_key)
        await self.db.commit()
        await self.db.refresh(api_key)

        logger.info(
            "api_key_created",
            key_id=str(api_key.id),
            name=name,
            environment=environment,
            permissions=granted,
        )

        return GeneratedAPIKey(
            key_id=api_key.id,
            plaintext_key=plaintext_key,
            key_prefix=key_prefix,
            name=name,
            environment=environment,
            permissions=tuple(granted),
            created_at=api_key.created_at,
            expires_at=expires_at,
        )

    async def validate_api_key(
        self, provided_key: str, update_last_used: bool = True
    ) -> APIKeyData:
        """
        Validate an API key and return its metadata.

        Raises:
            AuthenticationError: malformed, unknown, mismatched or expired key
        """
        if not provided_key.startswith(KEY_PREFIX):
            logger.warning("api_key_invalid_format", prefix=provided_key[:10])
            raise AuthenticationError("Invalid API key format")

        key_prefix = provided_key[:KEY_PREFIX_LENGTH]
        result = await self.db.execute(
            select(APIKey).where(APIKey.key_prefix == key_prefix, APIKey.status == "active")
        )
        api_key = result.scalar_one_or_none()

        if not api_key:
            logger.warning("api_key_not_found", prefix=key_prefix)
            raise AuthenticationError("Invalid API key")

        try:
            self.password_hasher.verify(api_key.key_hash, provided_key)
        except (VerifyMismatchError, InvalidHashError) as exc:
            logger.warning("api_key_hash_mismatch", key_id=str(api_key.id))
            raise AuthenticationError("Invalid API key") from exc

        if api_key.expires_at and datetime.now(UTC) > api_key.expires_at:
            # Auto-revoke expired key
            api_key.status = "revoked"
            await self.db.commit()
            logger.warning(
                "api_key_expired", key_id=str(api_key.id), expired_at=api_key.expires_at
            )
            raise AuthenticationError("API key expired")

        if update_last_used:
            api_key.last_used_at = datetime.now(UTC)
            await self.db.commit()

        logger.debug("api_key_validated", key_id=str(api_key.id), name=api_key.name)
        return _to_data(api_key)

    async def revoke_api_key(self, key_id: UUID) -> None:
        """Revoke an API key."""
        api_key = await self.db.get(APIKey, key_id)
        if not api_key:
            raise ValueError(f"API key not found: {key_id}")

        api_key.status = "revoked"
        await self.db.commit()

        logger.info("api_key_revoked", key_id=str(key_id), name=api_key.name)

    async def list_api_keys(self) -> list[APIKeyData]:
        """List active API keys."""
        result = await self.db.execute(
            select(APIKey).where(APIKey.status == "active").order_by(APIKey.created_at)
        )
        return [_to_data(key) for key in result.scalars().all()]
