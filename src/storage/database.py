"""Database storage for trades and accounts.

Nested records (opportunity, execution, balances, stats, ...) are stored as
JSON columns; fields that are filtered or sorted on are also stored as
plain columns. Every row carries a version counter so a read-modify-write
that raced with another writer fails instead of overwriting it.
"""
import asyncio
from contextlib import asynccontextmanager, nullcontext
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import AsyncIterator, Callable, List, Optional

import structlog
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String,
    delete, select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from src.core.config import database_config
from src.core.exceptions import (
    ConcurrentModification, DuplicateEntity, NotFound, StorageFailure,
)
from src.core.models import (
    TERMINAL_STATUSES, AccountStatus, Trade, UserAccount,
)

logger = structlog.get_logger(__name__)

Base = declarative_base()


class TradeModel(Base):
    """SQLAlchemy model for arbitrage trades."""
    __tablename__ = 'trades'

    tx_hash = Column(String, primary_key=True)
    wallet_address = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    success = Column(Boolean, nullable=False, default=False, index=True)
    profit_percent = Column(Numeric(36, 18), nullable=False, index=True)
    actual_profit = Column(Numeric(36, 18), nullable=True)
    opportunity_json = Column(JSON, nullable=False)
    execution_json = Column(JSON, nullable=False)
    results_json = Column(JSON, nullable=True)
    wallet_json = Column(JSON, nullable=False)
    risk_json = Column(JSON, nullable=False)
    metadata_json = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)
    stats_applied_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class AccountModel(Base):
    """SQLAlchemy model for user accounts."""
    __tablename__ = 'accounts'

    id = Column(String, primary_key=True)
    username = Column(String(30), nullable=False, unique=True)
    email = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True)
    api_key = Column(String, nullable=True, unique=True)
    api_enabled = Column(Boolean, nullable=False, default=False)
    total_profit = Column(Numeric(36, 18), default=0)
    wallets_json = Column(JSON, default=list)
    preferences_json = Column(JSON, default=dict)
    stats_json = Column(JSON, default=dict)
    security_json = Column(JSON, default=dict)
    api_access_json = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class AccountWalletModel(Base):
    """Wallet address index for account lookup."""
    __tablename__ = 'account_wallets'

    account_id = Column(String, ForeignKey('accounts.id'), primary_key=True)
    address = Column(String, primary_key=True, index=True)


class Database:
    """Async database interface."""

    def __init__(self, database_url: Optional[str] = None):
        # Convert SQLite URL to async version if needed
        db_url = database_url or database_config.database_url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        engine_kwargs = {"echo": database_config.echo_sql}
        # Sessions on a single shared connection must not interleave
        self._serial_lock: Optional[asyncio.Lock] = None
        if db_url.endswith(':memory:'):
            # One shared connection, otherwise each connection sees its own empty database
            self._serial_lock = asyncio.Lock()
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        elif db_url.startswith("sqlite+aiosqlite:///"):
            Path(db_url.split(":///", 1)[1]).parent.mkdir(parents=True, exist_ok=True)

        self.engine: AsyncEngine = create_async_engine(db_url, **engine_kwargs)
        self.session_maker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        """Session wrapped in a transaction; storage errors become ledger errors.

        In-memory databases share one connection, so their transactions run
        one at a time.
        """
        try:
            async with self._serial_lock or nullcontext():
                async with self.session_maker() as session:
                    async with session.begin():
                        yield session
        except StaleDataError as e:
            logger.warning("database.concurrent_modification", error=str(e))
            raise ConcurrentModification(str(e)) from e
        except IntegrityError as e:
            raise DuplicateEntity(str(e.orig)) from e
        except SQLAlchemyError as e:
            logger.error("database.error", error=str(e))
            raise StorageFailure(str(e)) from e

    # Trade operations
    async def create_trade(self, trade: Trade) -> Trade:
        """Insert a new trade; the tx hash must not exist yet."""
        async with self._transaction() as session:
            if await session.get(TradeModel, trade.tx_hash) is not None:
                raise DuplicateEntity(f"Trade already recorded: {trade.tx_hash}")
            db_trade = TradeModel(tx_hash=trade.tx_hash)
            self._trade_to_model(trade, db_trade)
            session.add(db_trade)
        return trade

    async def save_trade(self, trade: Trade) -> Trade:
        """Save or update a trade."""
        async with self._transaction() as session:
            db_trade = await session.get(TradeModel, trade.tx_hash)
            if db_trade is None:
                db_trade = TradeModel(tx_hash=trade.tx_hash)
                session.add(db_trade)
            self._trade_to_model(trade, db_trade)
        return trade

    async def get_trade(self, tx_hash: str) -> Optional[Trade]:
        """Get a trade by transaction hash."""
        async with self._transaction() as session:
            db_trade = await session.get(TradeModel, tx_hash)
            if db_trade is None:
                return None
            return self._trade_from_model(db_trade)

    async def update_trade(self, tx_hash: str, mutator: Callable[[Trade], Trade]) -> Trade:
        """Atomically read a trade, apply ``mutator`` and write the result.

        Raises:
            NotFound: Unknown tx hash
            ConcurrentModification: Another writer updated the trade meanwhile
        """
        async with self._transaction() as session:
            db_trade = await session.get(TradeModel, tx_hash)
            if db_trade is None:
                raise NotFound("trade", tx_hash)
            updated = mutator(self._trade_from_model(db_trade))
            self._trade_to_model(updated, db_trade)
        return updated

    async def get_all_trades(self) -> List[Trade]:
        return await self._query_trades(select(TradeModel))

    async def get_successful_trades(self, limit: Optional[int] = 100) -> List[Trade]:
        """Successful trades, newest first."""
        query = (
            select(TradeModel)
            .where(TradeModel.success.is_(True))
            .order_by(TradeModel.created_at.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        return await self._query_trades(query)

    async def get_trades_by_wallet(self, address: str, limit: int = 50) -> List[Trade]:
        """Trades executed by a wallet, newest first."""
        query = (
            select(TradeModel)
            .where(TradeModel.wallet_address == address)
            .order_by(TradeModel.created_at.desc())
            .limit(limit)
        )
        return await self._query_trades(query)

    async def get_trades_since(self, since: datetime, limit: int = 100) -> List[Trade]:
        """Trades created at or after ``since``, newest first."""
        query = (
            select(TradeModel)
            .where(TradeModel.created_at >= since)
            .order_by(TradeModel.created_at.desc())
            .limit(limit)
        )
        return await self._query_trades(query)

    async def get_trades_in_profit_range(
        self, min_profit: Decimal, max_profit: Decimal
    ) -> List[Trade]:
        """Trades whose predicted profit % lies in [min, max], highest first."""
        query = (
            select(TradeModel)
            .where(TradeModel.profit_percent >= min_profit)
            .where(TradeModel.profit_percent <= max_profit)
            .order_by(TradeModel.profit_percent.desc())
        )
        return await self._query_trades(query)

    async def get_unapplied_terminal_trades(self) -> List[Trade]:
        """Terminal trades whose outcome has not reached account stats."""
        query = (
            select(TradeModel)
            .where(TradeModel.status.in_([s.value for s in TERMINAL_STATUSES]))
            .where(TradeModel.stats_applied_at.is_(None))
            .order_by(TradeModel.created_at.asc())
        )
        return await self._query_trades(query)

    # Account operations
    async def create_account(self, account: UserAccount) -> UserAccount:
        """Insert a new account.

        Raises:
            DuplicateEntity: Username, email or wallet already registered
        """
        async with self._transaction() as session:
            clash = await session.execute(
                select(AccountModel.id).where(
                    (AccountModel.username == account.username)
                    | (AccountModel.email == account.email)
                )
            )
            if clash.first() is not None:
                raise DuplicateEntity(
                    f"Username or email already registered: {account.username}"
                )
            db_account = AccountModel(id=account.id)
            self._account_to_model(account, db_account)
            session.add(db_account)
            await session.flush()
            await self._sync_wallets(session, account)
        return account

    async def get_account(self, account_id: str) -> Optional[UserAccount]:
        """Get an account by ID."""
        async with self._transaction() as session:
            db_account = await session.get(AccountModel, account_id)
            if db_account is None:
                return None
            return self._account_from_model(db_account)

    async def update_account(
        self, account_id: str, mutator: Callable[[UserAccount], UserAccount]
    ) -> UserAccount:
        """Atomically read an account, apply ``mutator`` and write the result.

        Raises:
            NotFound: Unknown account
            ConcurrentModification: Another writer updated the account meanwhile
        """
        async with self._transaction() as session:
            db_account = await session.get(AccountModel, account_id)
            if db_account is None:
                raise NotFound("account", account_id)
            updated = mutator(self._account_from_model(db_account))
            self._account_to_model(updated, db_account)
            await self._sync_wallets(session, updated)
        return updated

    async def find_account_by_username(self, username: str) -> Optional[UserAccount]:
        return await self._find_account(AccountModel.username == username.strip())

    async def find_account_by_email(self, email: str) -> Optional[UserAccount]:
        return await self._find_account(AccountModel.email == email.strip().lower())

    async def find_account_by_api_key(self, api_key: str) -> Optional[UserAccount]:
        """Account owning an enabled API key."""
        return await self._find_account(
            (AccountModel.api_key == api_key) & AccountModel.api_enabled.is_(True)
        )

    async def find_account_by_wallet(self, address: str) -> Optional[UserAccount]:
        """First account that has linked the wallet address."""
        async with self._transaction() as session:
            result = await session.execute(
                select(AccountModel)
                .join(AccountWalletModel, AccountWalletModel.account_id == AccountModel.id)
                .where(AccountWalletModel.address == address)
                .order_by(AccountModel.created_at.asc())
                .limit(1)
            )
            db_account = result.scalar_one_or_none()
            return self._account_from_model(db_account) if db_account else None

    async def get_all_accounts(self) -> List[UserAccount]:
        return await self._query_accounts(select(AccountModel))

    async def get_top_accounts(self, limit: int = 10) -> List[UserAccount]:
        """Active accounts by total profit, highest first."""
        query = (
            select(AccountModel)
            .where(AccountModel.status == AccountStatus.ACTIVE.value)
            .order_by(AccountModel.total_profit.desc())
            .limit(limit)
        )
        return await self._query_accounts(query)

    async def get_accounts_since(self, since: datetime, limit: int = 100) -> List[UserAccount]:
        """Accounts created at or after ``since``, newest first."""
        query = (
            select(AccountModel)
            .where(AccountModel.created_at >= since)
            .order_by(AccountModel.created_at.desc())
            .limit(limit)
        )
        return await self._query_accounts(query)

    # Helpers
    async def _query_trades(self, query) -> List[Trade]:
        async with self._transaction() as session:
            result = await session.execute(query)
            return [self._trade_from_model(t) for t in result.scalars().all()]

    async def _query_accounts(self, query) -> List[UserAccount]:
        async with self._transaction() as session:
            result = await session.execute(query)
            return [self._account_from_model(a) for a in result.scalars().all()]

    async def _find_account(self, condition) -> Optional[UserAccount]:
        accounts = await self._query_accounts(select(AccountModel).where(condition).limit(1))
        return accounts[0] if accounts else None

    async def _sync_wallets(self, session: AsyncSession, account: UserAccount):
        await session.execute(
            delete(AccountWalletModel).where(AccountWalletModel.account_id == account.id)
        )
        for wallet in account.wallets:
            session.add(AccountWalletModel(account_id=account.id, address=wallet.address))

    def _trade_to_model(self, trade: Trade, model: TradeModel):
        """Copy a Trade onto its DB row."""
        results = trade.results
        model.wallet_address = trade.wallet.address
        model.status = trade.execution.status.value
        model.success = bool(results and results.success)
        model.profit_percent = trade.opportunity.profit_percent
        model.actual_profit = results.actual_profit if results else None
        model.opportunity_json = trade.opportunity.model_dump(mode="json")
        model.execution_json = trade.execution.model_dump(mode="json")
        model.results_json = results.model_dump(mode="json") if results else None
        model.wallet_json = trade.wallet.model_dump(mode="json")
        model.risk_json = trade.risk.model_dump(mode="json")
        model.metadata_json = trade.metadata.model_dump(mode="json")
        model.created_at = trade.created_at
        model.updated_at = trade.updated_at
        model.stats_applied_at = trade.stats_applied_at

    def _trade_from_model(self, model: TradeModel) -> Trade:
        """Convert DB model to Trade object."""
        return Trade.model_validate({
            "tx_hash": model.tx_hash,
            "opportunity": model.opportunity_json,
            "execution": model.execution_json,
            "results": model.results_json,
            "wallet": model.wallet_json,
            "risk": model.risk_json,
            "metadata": model.metadata_json or {},
            "created_at": model.created_at,
            "updated_at": model.updated_at,
            "stats_applied_at": model.stats_applied_at,
        })

    def _account_to_model(self, account: UserAccount, model: AccountModel):
        """Copy a UserAccount onto its DB row."""
        model.username = account.username
        model.email = account.email
        model.password_hash = account.password_hash
        model.status = account.status.value
        model.api_key = account.api_access.api_key
        model.api_enabled = account.api_access.enabled
        model.total_profit = account.stats.total_profit
        model.wallets_json = [w.model_dump(mode="json") for w in account.wallets]
        model.preferences_json = account.preferences.model_dump(mode="json")
        model.stats_json = account.stats.model_dump(mode="json")
        model.security_json = account.security.model_dump(mode="json")
        model.api_access_json = account.api_access.model_dump(mode="json")
        model.created_at = account.created_at
        model.updated_at = account.updated_at

    def _account_from_model(self, model: AccountModel) -> UserAccount:
        """Convert DB model to UserAccount object."""
        return UserAccount.model_validate({
            "id": model.id,
            "username": model.username,
            "email": model.email,
            "password_hash": model.password_hash,
            "status": model.status,
            "wallets": model.wallets_json or [],
            "preferences": model.preferences_json or {},
            "stats": model.stats_json or {},
            "security": model.security_json or {},
            "api_access": model.api_access_json or {},
            "created_at": model.created_at,
            "updated_at": model.updated_at,
        })
