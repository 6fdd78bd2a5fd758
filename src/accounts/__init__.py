"""Account security, credentials, wallets and trading statistics."""

from src.accounts.credentials import ApiKeyIssuer, BcryptPasswordHasher, PasswordHasher
from src.accounts.security import AccountSecurityGuard
from src.accounts.stats import AccountStatsAggregator, outcome_from_trade
from src.accounts.wallets import link_wallet, unlink_wallet

__all__ = [
    'AccountSecurityGuard',
    'AccountStatsAggregator',
    'ApiKeyIssuer',
    'BcryptPasswordHasher',
    'PasswordHasher',
    'link_wallet',
    'outcome_from_trade',
    'unlink_wallet',
]
