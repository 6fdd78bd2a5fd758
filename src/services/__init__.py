"""Service layer composing trades, accounts and reporting over storage."""

from src.services.ledger import ArbitrageLedger

__all__ = [
    'ArbitrageLedger',
]
