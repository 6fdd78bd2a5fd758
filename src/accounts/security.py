"""Login attempt tracking and time-boxed account lockout.

State per account is ``(login_attempts, lock_until)``:

- A failure after an expired lock restarts the counter at 1.
- Otherwise each failure increments the counter; reaching the threshold
  on an unlocked account locks it for the configured duration.
- A success clears both fields.
- A locked account is rejected before credentials are checked.
"""
from datetime import datetime, timedelta
from typing import Optional, Tuple

import structlog

from src.accounts.credentials import PasswordHasher
from src.core.config import SecurityConfig, security_config
from src.core.exceptions import AccountLocked
from src.core.models import LoginResult, UserAccount

logger = structlog.get_logger(__name__)


class AccountSecurityGuard:
    """Applies login attempts to an account's security state."""

    def __init__(self, config: Optional[SecurityConfig] = None):
        config = config or security_config
        self.max_attempts = config.max_login_attempts
        self.lock_duration = timedelta(hours=config.lock_duration_hours)

    def is_locked(self, account: UserAccount, now: Optional[datetime] = None) -> bool:
        return account.is_locked(now or datetime.utcnow())

    def record_failed_login(
        self, account: UserAccount, now: Optional[datetime] = None
    ) -> UserAccount:
        """Count a failed login and lock the account at the threshold."""
        now = now or datetime.utcnow()
        updated = account.model_copy(deep=True)
        security = updated.security

        if security.lock_until is not None and security.lock_until < now:
            security.login_attempts = 1
            security.lock_until = None
            logger.info("account.lock_expired", account_id=account.id)
        else:
            security.login_attempts += 1
            if security.login_attempts >= self.max_attempts and not account.is_locked(now):
                security.lock_until = now + self.lock_duration
                logger.warning(
                    "account.locked",
                    account_id=account.id,
                    attempts=security.login_attempts,
                    lock_until=security.lock_until.isoformat(),
                )

        updated.updated_at = now
        return updated

    def record_successful_login(
        self,
        account: UserAccount,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> UserAccount:
        """Clear the counter and any lock, and stamp the login."""
        now = now or datetime.utcnow()
        updated = account.model_copy(deep=True)
        updated.security.login_attempts = 0
        updated.security.lock_until = None
        updated.security.last_login_at = now
        if ip_address:
            updated.security.last_login_ip = ip_address
        updated.updated_at = now
        return updated

    def record_login_attempt(
        self,
        account: UserAccount,
        success: bool,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[UserAccount, LoginResult]:
        """Record the outcome of an externally verified login.

        A locked account is returned unchanged and the attempt reported as
        rejected, whatever ``success`` says.
        """
        now = now or datetime.utcnow()
        if account.is_locked(now):
            logger.warning("account.login_rejected_locked", account_id=account.id)
            return account, self._result(account, False, now)

        if success:
            updated = self.record_successful_login(account, now, ip_address)
        else:
            updated = self.record_failed_login(account, now)
        return updated, self._result(updated, success, now)

    def authenticate(
        self,
        account: UserAccount,
        password: str,
        hasher: PasswordHasher,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[UserAccount, LoginResult]:
        """Verify a password and record the attempt.

        Raises:
            AccountLocked: If the account is locked; the password is not checked
        """
        now = now or datetime.utcnow()
        if account.is_locked(now):
            logger.warning("account.login_rejected_locked", account_id=account.id)
            raise AccountLocked(account.id, account.security.lock_until)

        verified = hasher.verify(password, account.password_hash)
        if not verified:
            logger.info("account.login_failed", account_id=account.id)
        return self.record_login_attempt(account, verified, now, ip_address)

    def _result(self, account: UserAccount, success: bool, now: datetime) -> LoginResult:
        locked = account.is_locked(now)
        return LoginResult(
            success=success and not locked,
            locked=locked,
            lock_until=account.security.lock_until if locked else None,
            login_attempts=account.security.login_attempts,
        )
