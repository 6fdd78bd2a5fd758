"""Password hashing and API credential issuance."""
import secrets
from datetime import datetime
from typing import Callable, Optional, Protocol

import bcrypt
import structlog

from src.core.config import SecurityConfig, security_config
from src.core.models import UserAccount

logger = structlog.get_logger(__name__)


class PasswordHasher(Protocol):
    """One-way password hash with a verify operation."""

    def hash(self, plaintext: str) -> str:
        ...

    def verify(self, plaintext: str, hashed: str) -> bool:
        ...


class BcryptPasswordHasher:
    """bcrypt-backed password hasher."""

    def __init__(self, rounds: Optional[int] = None):
        self.rounds = rounds or security_config.bcrypt_rounds

    def hash(self, plaintext: str) -> str:
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(plaintext.encode("utf-8"), salt).decode("utf-8")

    def verify(self, plaintext: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            logger.warning("credentials.invalid_hash")
            return False


class ApiKeyIssuer:
    """Issues and revokes API key/secret pairs.

    Args:
        token_source: Callable returning a hex string of n random bytes
        config: Security settings (key size, default rate limit)
    """

    def __init__(
        self,
        token_source: Callable[[int], str] = secrets.token_hex,
        config: Optional[SecurityConfig] = None,
    ):
        self.token_source = token_source
        self.config = config or security_config

    def issue(self, account: UserAccount, now: Optional[datetime] = None) -> UserAccount:
        """Generate a fresh key and secret and enable API access."""
        now = now or datetime.utcnow()
        updated = account.model_copy(deep=True)
        updated.api_access.api_key = self.token_source(self.config.api_key_bytes)
        updated.api_access.api_secret = self.token_source(self.config.api_key_bytes)
        updated.api_access.enabled = True
        updated.api_access.rate_limit = self.config.api_rate_limit
        updated.updated_at = now

        logger.info("account.api_key_issued", account_id=account.id)
        return updated

    def revoke(self, account: UserAccount, now: Optional[datetime] = None) -> UserAccount:
        """Disable API access and drop the credentials."""
        updated = account.model_copy(deep=True)
        updated.api_access.enabled = False
        updated.api_access.api_key = None
        updated.api_access.api_secret = None
        updated.updated_at = now or datetime.utcnow()

        logger.info("account.api_key_revoked", account_id=account.id)
        return updated
