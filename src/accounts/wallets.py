"""Linking Stellar wallets to accounts."""
from datetime import datetime
from typing import Optional

import structlog

from src.core.exceptions import NotFound
from src.core.models import UserAccount, WalletLink

logger = structlog.get_logger(__name__)


def link_wallet(
    account: UserAccount,
    address: str,
    network: str = "testnet",
    now: Optional[datetime] = None,
) -> UserAccount:
    """Add a wallet, or refresh ``last_used`` if it is already linked."""
    now = now or datetime.utcnow()
    updated = account.model_copy(deep=True)

    existing = next((w for w in updated.wallets if w.address == address), None)
    if existing is not None:
        existing.last_used = now
    else:
        updated.wallets.append(
            WalletLink(address=address, network=network, connected_at=now, last_used=now)
        )
        logger.info("account.wallet_linked", account_id=account.id, address=address)

    updated.updated_at = now
    return updated


def unlink_wallet(
    account: UserAccount, address: str, now: Optional[datetime] = None
) -> UserAccount:
    """Remove a linked wallet.

    Raises:
        NotFound: If the wallet is not linked to the account
    """
    if not any(w.address == address for w in account.wallets):
        raise NotFound("wallet", address)

    updated = account.model_copy(deep=True)
    updated.wallets = [w for w in updated.wallets if w.address != address]
    updated.updated_at = now or datetime.utcnow()

    logger.info("account.wallet_unlinked", account_id=account.id, address=address)
    return updated
