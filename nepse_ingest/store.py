"""Durable store: the system of record.

SQLAlchemy 2.0 async models and an adapter exposing the idempotent upserts
and reads the pipeline needs. Column names equal the canonical model field
names so rows convert back with ``model_validate(..., from_attributes=True)``.

Upserts are keyed by natural keys (symbol; symbol + business date; security
id + fiscal year ...) and compiled per dialect: PostgreSQL and SQLite use
``INSERT ... ON CONFLICT DO UPDATE``, MySQL ``ON DUPLICATE KEY UPDATE``.
"""

from datetime import UTC, date, datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    UniqueConstraint,
    select,
)
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from config.settings import GlobalConfig, get_config
from nepse_ingest.exceptions import StoreError
from nepse_ingest.logger import get_logger
from nepse_ingest.validator import (
    CompanyProfile,
    Dividend,
    Financial,
    IndexHistoryRecord,
    InstrumentClass,
    MarketIndexSnapshot,
    MarketStatus,
    PriceQuote,
    ScheduledJobStatus,
    SecurityRef,
)

log = get_logger(__name__)

# Naming convention for constraints
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class _PriceColumns:
    security_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    security_name: Mapped[str] = mapped_column(String(255), default="")
    business_date: Mapped[date] = mapped_column(Date)
    open_price: Mapped[float] = mapped_column(Float, default=0.0)
    high_price: Mapped[float] = mapped_column(Float, default=0.0)
    low_price: Mapped[float] = mapped_column(Float, default=0.0)
    close_price: Mapped[float] = mapped_column(Float)
    last_traded_price: Mapped[float] = mapped_column(Float, default=0.0)
    previous_close: Mapped[float] = mapped_column(Float, default=0.0)
    change: Mapped[float] = mapped_column(Float, default=0.0)
    percentage_change: Mapped[float] = mapped_column(Float, default=0.0)
    volume: Mapped[float] = mapped_column(Float, default=0.0)
    turnover: Mapped[float] = mapped_column(Float, default=0.0)
    total_trades: Mapped[int] = mapped_column(Integer, default=0)
    average_traded_price: Mapped[float] = mapped_column(Float, default=0.0)
    market_capitalization: Mapped[float] = mapped_column(Float, default=0.0)
    fifty_two_week_high: Mapped[float] = mapped_column(Float, default=0.0)
    fifty_two_week_low: Mapped[float] = mapped_column(Float, default=0.0)
    last_updated_time: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class StockPrice(_PriceColumns, Base):
    """Live projection: exactly one row per symbol."""

    __tablename__ = "stock_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(32), unique=True)


class StockPriceHistory(_PriceColumns, Base):
    """One row per symbol and business date."""

    __tablename__ = "stock_price_history"
    __table_args__ = (UniqueConstraint("symbol", "business_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String(32))


class MarketIndex(Base):
    """Market summary, one row per trading date."""

    __tablename__ = "market_index"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trading_date: Mapped[date] = mapped_column(Date, unique=True)
    index_value: Mapped[float] = mapped_column(Float)
    change: Mapped[float] = mapped_column(Float, default=0.0)
    percentage_change: Mapped[float] = mapped_column(Float, default=0.0)
    turnover: Mapped[float] = mapped_column(Float, default=0.0)
    traded_shares: Mapped[float] = mapped_column(Float, default=0.0)
    transactions: Mapped[int] = mapped_column(Integer, default=0)
    advanced: Mapped[int] = mapped_column(Integer, default=0)
    declined: Mapped[int] = mapped_column(Integer, default=0)
    unchanged: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default=MarketStatus.CLOSED.value)
    is_open: Mapped[bool] = mapped_column(Boolean, default=False)
    status_date: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status_time: Mapped[str | None] = mapped_column(String(16), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class MarketIndexHistory(Base):
    """Daily close per exchange index."""

    __tablename__ = "market_indices_history"
    __table_args__ = (UniqueConstraint("business_date", "exchange_index_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    business_date: Mapped[date] = mapped_column(Date)
    exchange_index_id: Mapped[int] = mapped_column(Integer)
    index_name: Mapped[str] = mapped_column(String(64), default="")
    closing_index: Mapped[float] = mapped_column(Float)
    open_index: Mapped[float] = mapped_column(Float, default=0.0)
    high_index: Mapped[float] = mapped_column(Float, default=0.0)
    low_index: Mapped[float] = mapped_column(Float, default=0.0)
    fifty_two_week_high: Mapped[float] = mapped_column(Float, default=0.0)
    fifty_two_week_low: Mapped[float] = mapped_column(Float, default=0.0)
    turnover_value: Mapped[float] = mapped_column(Float, default=0.0)
    turnover_volume: Mapped[float] = mapped_column(Float, default=0.0)
    total_transaction: Mapped[int] = mapped_column(Integer, default=0)
    abs_change: Mapped[float] = mapped_column(Float, default=0.0)
    percentage_change: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class CompanyDetail(Base):
    """Security master data; updated in place, never deleted."""

    __tablename__ = "company_details"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    security_id: Mapped[int] = mapped_column(Integer, unique=True)
    symbol: Mapped[str] = mapped_column(String(32))
    company_name: Mapped[str] = mapped_column(String(255), default="")
    sector_name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(String(32), default="")
    permitted_to_trade: Mapped[str] = mapped_column(String(16), default="")
    instrument_type: Mapped[str] = mapped_column(String(64), default="")
    instrument_class: Mapped[str] = mapped_column(String(16), default=InstrumentClass.OTHER.value)
    listing_date: Mapped[str] = mapped_column(String(32), default="")
    isin: Mapped[str] = mapped_column(String(32), default="")
    share_group: Mapped[str] = mapped_column(String(64), default="")
    regulatory_body: Mapped[str] = mapped_column(String(255), default="")
    website: Mapped[str] = mapped_column(String(255), default="")
    issue_manager: Mapped[str] = mapped_column(String(255), default="")
    share_registrar: Mapped[str] = mapped_column(String(255), default="")
    logo_url: Mapped[str] = mapped_column(String(512), default="")
    face_value: Mapped[float] = mapped_column(Float, default=0.0)
    last_traded_price: Mapped[float] = mapped_column(Float, default=0.0)
    previous_close: Mapped[float] = mapped_column(Float, default=0.0)
    open_price: Mapped[float] = mapped_column(Float, default=0.0)
    high_price: Mapped[float] = mapped_column(Float, default=0.0)
    low_price: Mapped[float] = mapped_column(Float, default=0.0)
    close_price: Mapped[float] = mapped_column(Float, default=0.0)
    fifty_two_week_high: Mapped[float] = mapped_column(Float, default=0.0)
    fifty_two_week_low: Mapped[float] = mapped_column(Float, default=0.0)
    average_traded_price: Mapped[float] = mapped_column(Float, default=0.0)
    total_traded_quantity: Mapped[float] = mapped_column(Float, default=0.0)
    total_trades: Mapped[int] = mapped_column(Integer, default=0)
    total_listed_shares: Mapped[float] = mapped_column(Float, default=0.0)
    paid_up_capital: Mapped[float] = mapped_column(Float, default=0.0)
    market_capitalization: Mapped[float] = mapped_column(Float, default=0.0)
    promoter_shares: Mapped[float] = mapped_column(Float, default=0.0)
    public_shares: Mapped[float] = mapped_column(Float, default=0.0)
    promoter_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    public_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    business_date: Mapped[str] = mapped_column(String(32), default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class DividendRow(Base):
    __tablename__ = "dividends"
    __table_args__ = (UniqueConstraint("security_id", "fiscal_year"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    security_id: Mapped[int] = mapped_column(Integer)
    fiscal_year: Mapped[str] = mapped_column(String(32))
    bonus_share: Mapped[float] = mapped_column(Float, default=0.0)
    cash_dividend: Mapped[float] = mapped_column(Float, default=0.0)
    total_dividend: Mapped[float] = mapped_column(Float, default=0.0)
    book_close_date: Mapped[str] = mapped_column(String(32), default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class FinancialRow(Base):
    __tablename__ = "company_financials"
    __table_args__ = (UniqueConstraint("security_id", "fiscal_year", "quarter"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    security_id: Mapped[int] = mapped_column(Integer)
    fiscal_year: Mapped[str] = mapped_column(String(32))
    quarter: Mapped[str] = mapped_column(String(32), default="")
    paid_up_capital: Mapped[float] = mapped_column(Float, default=0.0)
    net_profit: Mapped[float] = mapped_column(Float, default=0.0)
    earnings_per_share: Mapped[float] = mapped_column(Float, default=0.0)
    net_worth_per_share: Mapped[float] = mapped_column(Float, default=0.0)
    price_earnings_ratio: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SchedulerStatusRow(Base):
    __tablename__ = "scheduler_status"

    job_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    fail_count: Mapped[int] = mapped_column(Integer, default=0)
    today_success_count: Mapped[int] = mapped_column(Integer, default=0)
    today_fail_count: Mapped[int] = mapped_column(Integer, default=0)
    stats_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="IDLE")
    message: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Store:
    """Async adapter over the relational schema.

    Every SQLAlchemy error is raised as ``StoreError``.

    Example:
        store = Store.from_config(config)
        await store.create_schema()
        await store.upsert_prices(quotes)
    """

    batch_size = 200

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_config(cls, config: GlobalConfig | None = None) -> "Store":
        config = config or get_config()
        engine = create_async_engine(
            config.database_url,
            echo=config.database_echo,
            pool_pre_ping=True,
        )
        return cls(engine)

    async def create_schema(self) -> None:
        """Create missing tables; existing tables are left untouched."""
        try:
            async with self.engine.begin() as connection:
                await connection.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise StoreError(operation="create_schema", reason=str(exc)) from exc
        log.info("Store schema ensured", dialect=self.engine.dialect.name)

    async def dispose(self) -> None:
        await self.engine.dispose()

    def _upsert_statement(self, model: type[Base], batch: list[dict[str, Any]], key: Sequence[str]):
        table = model.__table__
        dialect = self.engine.dialect.name
        updates = [
            column.name
            for column in table.columns
            if column.name in batch[0] and column.name not in key and not column.primary_key
        ]

        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(table).values(batch)
            if not updates:
                return stmt.on_conflict_do_nothing(index_elements=list(key))
            return stmt.on_conflict_do_update(
                index_elements=list(key),
                set_={name: stmt.excluded[name] for name in updates},
            )

        if dialect in ("mysql", "mariadb"):
            stmt = mysql_insert(table).values(batch)
            return stmt.on_duplicate_key_update({name: stmt.inserted[name] for name in updates})

        raise StoreError(operation=f"upsert {table.name}", reason=f"Unsupported dialect '{dialect}'")

    async def _upsert(self, model: type[Base], rows: list[dict[str, Any]], key: Sequence[str]) -> int:
        if not rows:
            return 0
        operation = f"upsert {model.__tablename__}"
        try:
            async with self.session_factory() as session:
                for start in range(0, len(rows), self.batch_size):
                    batch = rows[start : start + self.batch_size]
                    await session.execute(self._upsert_statement(model, batch, key))
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(operation=operation, reason=str(exc)) from exc

        log.debug("Rows upserted", table=model.__tablename__, rows=len(rows))
        return len(rows)

    async def _scalars(self, operation: str, statement: Any) -> list[Any]:
        try:
            async with self.session_factory() as session:
                result = await session.scalars(statement)
                return list(result.all())
        except SQLAlchemyError as exc:
            raise StoreError(operation=operation, reason=str(exc)) from exc

    # -- writes -----------------------------------------------------------

    async def upsert_prices(self, quotes: Iterable[PriceQuote]) -> int:
        """Replace the live projection row of each symbol."""
        now = _utcnow()
        rows = [{**quote.model_dump(), "updated_at": now} for quote in quotes]
        return await self._upsert(StockPrice, rows, ["symbol"])

    async def upsert_price_history(self, quotes: Iterable[PriceQuote]) -> int:
        now = _utcnow()
        rows = [{**quote.model_dump(), "updated_at": now} for quote in quotes]
        return await self._upsert(StockPriceHistory, rows, ["symbol", "business_date"])

    async def upsert_market_index(self, snapshot: MarketIndexSnapshot) -> int:
        row = {
            **snapshot.model_dump(),
            "status": snapshot.status.value,
            "is_open": snapshot.is_open,
            "updated_at": _utcnow(),
        }
        return await self._upsert(MarketIndex, [row], ["trading_date"])

    async def upsert_index_history(self, records: Iterable[IndexHistoryRecord]) -> int:
        now = _utcnow()
        rows = [{**record.model_dump(), "updated_at": now} for record in records]
        return await self._upsert(MarketIndexHistory, rows, ["business_date", "exchange_index_id"])

    async def upsert_company(self, profile: CompanyProfile) -> int:
        row = {
            **profile.model_dump(),
            "instrument_class": profile.instrument_class.value,
            "updated_at": _utcnow(),
        }
        return await self._upsert(CompanyDetail, [row], ["security_id"])

    async def upsert_dividends(self, dividends: Iterable[Dividend]) -> int:
        now = _utcnow()
        rows = [{**dividend.model_dump(), "updated_at": now} for dividend in dividends]
        return await self._upsert(DividendRow, rows, ["security_id", "fiscal_year"])

    async def upsert_financials(self, financials: Iterable[Financial]) -> int:
        now = _utcnow()
        rows = [{**financial.model_dump(), "updated_at": now} for financial in financials]
        return await self._upsert(FinancialRow, rows, ["security_id", "fiscal_year", "quarter"])

    async def save_job_status(self, status: ScheduledJobStatus) -> None:
        row = {**status.model_dump(), "status": status.status.value, "updated_at": _utcnow()}
        await self._upsert(SchedulerStatusRow, [row], ["job_name"])

    # -- reads ------------------------------------------------------------

    async def latest_market_index(self) -> MarketIndexSnapshot | None:
        rows = await self._scalars(
            "latest market_index",
            select(MarketIndex).order_by(MarketIndex.trading_date.desc()).limit(1),
        )
        return MarketIndexSnapshot.model_validate(rows[0], from_attributes=True) if rows else None

    async def market_index_for(self, trading_date: date) -> MarketIndexSnapshot | None:
        rows = await self._scalars(
            "market_index by date",
            select(MarketIndex).where(MarketIndex.trading_date == trading_date),
        )
        return MarketIndexSnapshot.model_validate(rows[0], from_attributes=True) if rows else None

    async def market_status(self) -> MarketStatus | None:
        snapshot = await self.latest_market_index()
        return snapshot.status if snapshot else None

    async def price(self, symbol: str) -> PriceQuote | None:
        rows = await self._scalars(
            "stock_prices by symbol",
            select(StockPrice).where(StockPrice.symbol == symbol.upper()),
        )
        return PriceQuote.model_validate(rows[0], from_attributes=True) if rows else None

    async def prices(self, business_date: date | None = None) -> list[PriceQuote]:
        statement = select(StockPrice).order_by(StockPrice.symbol)
        if business_date is not None:
            statement = statement.where(StockPrice.business_date == business_date)
        rows = await self._scalars("stock_prices", statement)
        return [PriceQuote.model_validate(row, from_attributes=True) for row in rows]

    async def price_history(self, symbol: str) -> list[PriceQuote]:
        rows = await self._scalars(
            "stock_price_history by symbol",
            select(StockPriceHistory)
            .where(StockPriceHistory.symbol == symbol.upper())
            .order_by(StockPriceHistory.business_date),
        )
        return [PriceQuote.model_validate(row, from_attributes=True) for row in rows]

    async def index_history(self, exchange_index_id: int) -> list[IndexHistoryRecord]:
        rows = await self._scalars(
            "market_indices_history",
            select(MarketIndexHistory)
            .where(MarketIndexHistory.exchange_index_id == exchange_index_id)
            .order_by(MarketIndexHistory.business_date),
        )
        return [IndexHistoryRecord.model_validate(row, from_attributes=True) for row in rows]

    async def company(self, security_id: int) -> CompanyProfile | None:
        rows = await self._scalars(
            "company_details by id",
            select(CompanyDetail).where(CompanyDetail.security_id == security_id),
        )
        return CompanyProfile.model_validate(rows[0], from_attributes=True) if rows else None

    async def dividends(self, security_id: int) -> list[Dividend]:
        rows = await self._scalars(
            "dividends by security",
            select(DividendRow)
            .where(DividendRow.security_id == security_id)
            .order_by(DividendRow.fiscal_year),
        )
        return [Dividend.model_validate(row, from_attributes=True) for row in rows]

    async def financials(self, security_id: int) -> list[Financial]:
        rows = await self._scalars(
            "company_financials by security",
            select(FinancialRow)
            .where(FinancialRow.security_id == security_id)
            .order_by(FinancialRow.fiscal_year, FinancialRow.quarter),
        )
        return [Financial.model_validate(row, from_attributes=True) for row in rows]

    async def securities(self) -> list[SecurityRef]:
        """Every security with a known id in the live price table."""
        rows = await self._scalars(
            "securities",
            select(StockPrice)
            .where(StockPrice.security_id.is_not(None), StockPrice.security_id > 0)
            .order_by(StockPrice.symbol),
        )
        return [SecurityRef(row.security_id, row.symbol) for row in rows]

    async def securities_missing_details(self) -> list[SecurityRef]:
        """Securities with prices but no company_details row yet."""
        known = select(CompanyDetail.security_id)
        rows = await self._scalars(
            "securities missing details",
            select(StockPrice)
            .where(
                StockPrice.security_id.is_not(None),
                StockPrice.security_id > 0,
                StockPrice.security_id.not_in(known),
            )
            .order_by(StockPrice.symbol),
        )
        return [SecurityRef(row.security_id, row.symbol) for row in rows]

    async def securities_by_class(self, instrument_class: InstrumentClass) -> list[SecurityRef]:
        rows = await self._scalars(
            "securities by instrument class",
            select(CompanyDetail)
            .where(CompanyDetail.instrument_class == instrument_class.value)
            .order_by(CompanyDetail.symbol),
        )
        return [SecurityRef(row.security_id, row.symbol) for row in rows]

    async def job_statuses(self) -> list[ScheduledJobStatus]:
        rows = await self._scalars("scheduler_status", select(SchedulerStatusRow))
        return [ScheduledJobStatus.model_validate(row, from_attributes=True) for row in rows]
