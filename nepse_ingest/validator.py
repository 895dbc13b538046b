"""Canonical data models and extraction quality monitoring.

This module implements:
- One pydantic model per entity the pipeline moves (quotes, index
  snapshots, company records, history rows, job status)
- QualityMonitor (Watchdog) that rejects a strategy's batch when too many
  raw rows fail validation

Design Rationale:
    The exchange website mixes camelCase API payloads, CSV exports and
    free-text table cells. Extractors map those shapes to the field names
    below exactly once; everything downstream (synchronizer, stores,
    archivers) only ever sees these models.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, NamedTuple, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from config.settings import GlobalConfig, get_config
from nepse_ingest.exceptions import LayoutShiftError
from nepse_ingest.logger import get_logger
from nepse_ingest.parsers import clean_text, normalize_market_status, parse_number

log = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


def _coerce_date(value: Any) -> Any:
    """Accept ``YYYY-MM-DD`` with or without a trailing time component."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and len(value) >= 10:
        return value.strip()[:10]
    return value


class MarketStatus(str, Enum):
    """Trading status shown on the exchange homepage."""

    OPEN = "OPEN"
    PRE_OPEN = "PRE_OPEN"
    CLOSED = "CLOSED"

    @property
    def is_open(self) -> bool:
        return self in (MarketStatus.OPEN, MarketStatus.PRE_OPEN)


class InstrumentClass(str, Enum):
    """Coarse instrument family used by the type-correction cleanup."""

    EQUITY = "equity"
    DEBENTURE = "debenture"
    MUTUAL_FUND = "mutual_fund"
    OTHER = "other"


class JobState(str, Enum):
    """Lifecycle of a scheduled job run."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class SecurityRef(NamedTuple):
    """Identifies one security to scrape."""

    security_id: int
    symbol: str


class PriceQuote(BaseModel):
    """One security's trading snapshot for a business date.

    ``close_price`` is the last traded price while the market is open and
    the closing price afterwards. A zero close is representable here but
    is rejected by the synchronizer before it reaches any store.
    """

    symbol: str = Field(..., min_length=1, max_length=32)
    security_id: int | None = None
    security_name: str = ""
    business_date: date
    open_price: float = Field(default=0.0, ge=0.0)
    high_price: float = Field(default=0.0, ge=0.0)
    low_price: float = Field(default=0.0, ge=0.0)
    close_price: float = Field(..., ge=0.0)
    last_traded_price: float = Field(default=0.0, ge=0.0)
    previous_close: float = Field(default=0.0, ge=0.0)
    change: float = 0.0
    percentage_change: float = 0.0
    volume: float = Field(default=0.0, ge=0.0)
    turnover: float = Field(default=0.0, ge=0.0)
    total_trades: int = Field(default=0, ge=0)
    average_traded_price: float = Field(default=0.0, ge=0.0)
    market_capitalization: float = Field(default=0.0, ge=0.0)
    fifty_two_week_high: float = Field(default=0.0, ge=0.0)
    fifty_two_week_low: float = Field(default=0.0, ge=0.0)
    last_updated_time: str | None = None

    @field_validator("symbol", mode="before")
    @classmethod
    def clean_symbol(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError(f"Symbol must be a string, got {type(value).__name__}")
        return clean_text(value).upper()

    @field_validator(
        "open_price",
        "high_price",
        "low_price",
        "close_price",
        "last_traded_price",
        "previous_close",
        "change",
        "percentage_change",
        "volume",
        "turnover",
        "average_traded_price",
        "market_capitalization",
        "fifty_two_week_high",
        "fifty_two_week_low",
        mode="before",
    )
    @classmethod
    def coerce_number(cls, value: Any) -> float:
        return parse_number(value)

    @field_validator("total_trades", mode="before")
    @classmethod
    def coerce_count(cls, value: Any) -> int:
        return int(parse_number(value))

    @field_validator("security_id", mode="before")
    @classmethod
    def coerce_security_id(cls, value: Any) -> int | None:
        number = int(parse_number(value))
        return number if number > 0 else None

    @field_validator("last_updated_time", mode="before")
    @classmethod
    def blank_time_is_none(cls, value: Any) -> str | None:
        return clean_text(value) or None

    @field_validator("business_date", mode="before")
    @classmethod
    def coerce_business_date(cls, value: Any) -> Any:
        return _coerce_date(value)

    @model_validator(mode="after")
    def derive_change(self) -> "PriceQuote":
        """Fill derived fields the source omitted."""
        if self.last_traded_price == 0:
            self.last_traded_price = self.close_price
        if self.change == 0 and self.previous_close > 0 and self.close_price > 0:
            self.change = self.close_price - self.previous_close
            self.percentage_change = self.change / self.previous_close * 100
        return self

    def fingerprint(self) -> tuple[float, float, str | None]:
        """Fields whose equality marks an unchanged intraday snapshot."""
        return (self.close_price, self.volume, self.last_updated_time)


class MarketIndexSnapshot(BaseModel):
    """Whole-market aggregate plus the trading status descriptor."""

    index_value: float = Field(..., ge=0.0)
    change: float = 0.0
    percentage_change: float = 0.0
    turnover: float = Field(default=0.0, ge=0.0)
    traded_shares: float = Field(default=0.0, ge=0.0)
    transactions: int = Field(default=0, ge=0)
    advanced: int = Field(default=0, ge=0)
    declined: int = Field(default=0, ge=0)
    unchanged: int = Field(default=0, ge=0)
    status: MarketStatus = MarketStatus.CLOSED
    status_date: str | None = None
    status_time: str | None = None
    trading_date: date

    @field_validator(
        "index_value", "change", "percentage_change", "turnover", "traded_shares", mode="before"
    )
    @classmethod
    def coerce_number(cls, value: Any) -> float:
        return parse_number(value)

    @field_validator("transactions", "advanced", "declined", "unchanged", mode="before")
    @classmethod
    def coerce_count(cls, value: Any) -> int:
        return int(parse_number(value))

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return normalize_market_status(value)
        return value

    @field_validator("status_date", "status_time", mode="before")
    @classmethod
    def blank_text_is_none(cls, value: Any) -> str | None:
        return clean_text(value) or None

    @field_validator("trading_date", mode="before")
    @classmethod
    def coerce_trading_date(cls, value: Any) -> Any:
        return _coerce_date(value)

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    def fingerprint(self) -> tuple[float, str | None, float, float]:
        """Fields whose equality marks an unchanged intraday snapshot."""
        return (self.index_value, self.status_time, self.traded_shares, self.turnover)


class CompanyProfile(BaseModel):
    """Security master data scraped from the company detail page."""

    security_id: int = Field(..., gt=0)
    symbol: str = Field(..., min_length=1, max_length=32)
    company_name: str = ""
    sector_name: str = ""
    email: str = ""
    status: str = ""
    permitted_to_trade: str = ""
    instrument_type: str = ""
    instrument_class: InstrumentClass = InstrumentClass.OTHER
    listing_date: str = ""
    isin: str = ""
    share_group: str = ""
    regulatory_body: str = ""
    website: str = ""
    issue_manager: str = ""
    share_registrar: str = ""
    logo_url: str = ""
    face_value: float = 0.0
    last_traded_price: float = 0.0
    previous_close: float = 0.0
    open_price: float = 0.0
    high_price: float = 0.0
    low_price: float = 0.0
    close_price: float = 0.0
    fifty_two_week_high: float = 0.0
    fifty_two_week_low: float = 0.0
    average_traded_price: float = 0.0
    total_traded_quantity: float = 0.0
    total_trades: int = 0
    total_listed_shares: float = 0.0
    paid_up_capital: float = 0.0
    market_capitalization: float = 0.0
    promoter_shares: float = 0.0
    public_shares: float = 0.0
    promoter_percentage: float = 0.0
    public_percentage: float = 0.0
    business_date: str = ""

    @field_validator("symbol", mode="before")
    @classmethod
    def clean_symbol(cls, value: Any) -> str:
        return clean_text(value).upper()

    @field_validator(
        "company_name",
        "sector_name",
        "email",
        "status",
        "permitted_to_trade",
        "instrument_type",
        "listing_date",
        "isin",
        "share_group",
        "regulatory_body",
        "website",
        "issue_manager",
        "share_registrar",
        "logo_url",
        "business_date",
        mode="before",
    )
    @classmethod
    def clean_strings(cls, value: Any) -> str:
        return clean_text(value)

    @field_validator(
        "face_value",
        "last_traded_price",
        "previous_close",
        "open_price",
        "high_price",
        "low_price",
        "close_price",
        "fifty_two_week_high",
        "fifty_two_week_low",
        "average_traded_price",
        "total_traded_quantity",
        "total_listed_shares",
        "paid_up_capital",
        "market_capitalization",
        "promoter_shares",
        "public_shares",
        "promoter_percentage",
        "public_percentage",
        mode="before",
    )
    @classmethod
    def coerce_number(cls, value: Any) -> float:
        return parse_number(value)

    @field_validator("total_trades", mode="before")
    @classmethod
    def coerce_count(cls, value: Any) -> int:
        return int(parse_number(value))


class Dividend(BaseModel):
    """Dividend declared for one fiscal year."""

    security_id: int = Field(..., gt=0)
    fiscal_year: str = Field(..., min_length=1, max_length=32)
    bonus_share: float = 0.0
    cash_dividend: float = 0.0
    total_dividend: float = 0.0
    book_close_date: str = ""

    @field_validator("bonus_share", "cash_dividend", "total_dividend", mode="before")
    @classmethod
    def coerce_percent(cls, value: Any) -> float:
        if isinstance(value, str):
            value = value.replace("%", "").replace("Rs.", "").replace("Rs", "")
        return parse_number(value)

    @field_validator("fiscal_year", "book_close_date", mode="before")
    @classmethod
    def clean_strings(cls, value: Any) -> str:
        return clean_text(value)

    @model_validator(mode="after")
    def derive_total(self) -> "Dividend":
        if self.total_dividend == 0:
            self.total_dividend = self.bonus_share + self.cash_dividend
        return self


class Financial(BaseModel):
    """Quarterly financial highlights of a security."""

    security_id: int = Field(..., gt=0)
    fiscal_year: str = Field(..., min_length=1, max_length=32)
    quarter: str = ""
    paid_up_capital: float = 0.0
    net_profit: float = 0.0
    earnings_per_share: float = 0.0
    net_worth_per_share: float = 0.0
    price_earnings_ratio: float = 0.0

    @field_validator(
        "paid_up_capital",
        "net_profit",
        "earnings_per_share",
        "net_worth_per_share",
        "price_earnings_ratio",
        mode="before",
    )
    @classmethod
    def coerce_number(cls, value: Any) -> float:
        return parse_number(value)

    @field_validator("fiscal_year", "quarter", mode="before")
    @classmethod
    def clean_strings(cls, value: Any) -> str:
        return clean_text(value)


class CompanyRecord(BaseModel):
    """Everything one company-detail scrape produces."""

    profile: CompanyProfile
    dividends: list[Dividend] = Field(default_factory=list)
    financials: list[Financial] = Field(default_factory=list)


class IndexHistoryRecord(BaseModel):
    """Daily close of one exchange index."""

    business_date: date
    exchange_index_id: int = Field(..., gt=0)
    index_name: str = ""
    closing_index: float = Field(..., ge=0.0)
    open_index: float = 0.0
    high_index: float = 0.0
    low_index: float = 0.0
    fifty_two_week_high: float = 0.0
    fifty_two_week_low: float = 0.0
    turnover_value: float = 0.0
    turnover_volume: float = 0.0
    total_transaction: int = 0
    abs_change: float = 0.0
    percentage_change: float = 0.0

    @field_validator("business_date", mode="before")
    @classmethod
    def coerce_business_date(cls, value: Any) -> Any:
        return _coerce_date(value)

    @field_validator(
        "closing_index",
        "open_index",
        "high_index",
        "low_index",
        "fifty_two_week_high",
        "fifty_two_week_low",
        "turnover_value",
        "turnover_volume",
        "abs_change",
        "percentage_change",
        mode="before",
    )
    @classmethod
    def coerce_number(cls, value: Any) -> float:
        return parse_number(value)

    @field_validator("total_transaction", mode="before")
    @classmethod
    def coerce_count(cls, value: Any) -> int:
        return int(parse_number(value))


class ScheduledJobStatus(BaseModel):
    """Run statistics and last status of one named job."""

    job_name: str
    last_run: datetime | None = None
    last_success: datetime | None = None
    success_count: int = 0
    fail_count: int = 0
    today_success_count: int = 0
    today_fail_count: int = 0
    stats_date: str | None = None
    status: JobState = JobState.IDLE
    message: str | None = None


class QualityMonitor:
    """Watchdog for monitoring extraction quality and detecting layout shifts.

    Each strategy validates its raw rows through the monitor. When the
    share of rows that fail validation exceeds the configured threshold,
    the whole batch is rejected with ``LayoutShiftError`` so a half-broken
    page never reaches the stores; the strategy chain then falls back to
    the next strategy.

    Example:
        monitor = QualityMonitor()
        quotes = monitor.validate_rows(raw_rows, PriceQuote, url=page.url)
    """

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self._batch_attempts: int = 0
        self._batch_successes: int = 0
        self._total_attempts: int = 0
        self._total_successes: int = 0
        self._current_url: str = ""

    def start_batch(self, url: str) -> None:
        """Begin monitoring a new batch, keeping cumulative totals."""
        self._batch_attempts = 0
        self._batch_successes = 0
        self._current_url = url
        log.debug("Batch monitoring started", url=url)

    def record_success(self) -> None:
        self._batch_attempts += 1
        self._batch_successes += 1
        self._total_attempts += 1
        self._total_successes += 1

    def record_failure(self) -> None:
        self._batch_attempts += 1
        self._total_attempts += 1

    @property
    def batch_failure_ratio(self) -> float:
        if self._batch_attempts == 0:
            return 0.0
        return 1.0 - (self._batch_successes / self._batch_attempts)

    @property
    def total_failure_ratio(self) -> float:
        if self._total_attempts == 0:
            return 0.0
        return 1.0 - (self._total_successes / self._total_attempts)

    def evaluate_batch(self) -> None:
        """Evaluate current batch quality against threshold.

        Raises:
            LayoutShiftError: If batch failure ratio exceeds threshold.
        """
        if self._batch_attempts == 0:
            log.warning("Empty batch evaluated - no rows found", url=self._current_url)
            return

        failure_ratio = self.batch_failure_ratio
        threshold = self.config.watchdog_failure_threshold

        log.debug(
            "Batch quality evaluated",
            url=self._current_url,
            batch_attempts=self._batch_attempts,
            batch_successes=self._batch_successes,
            failure_ratio=f"{failure_ratio:.1%}",
        )

        # Epsilon keeps a ratio exactly at the threshold acceptable
        if failure_ratio > threshold + 1e-9:
            log.critical(
                "WATCHDOG ALERT: Failure threshold exceeded",
                failure_ratio=f"{failure_ratio:.1%}",
                threshold=f"{threshold:.1%}",
                batch_size=self._batch_attempts,
                url=self._current_url,
            )
            raise LayoutShiftError(
                failure_ratio=failure_ratio,
                threshold=threshold,
                batch_size=self._batch_attempts,
                url=self._current_url,
            )

    def validate_rows(self, rows: Iterable[dict[str, Any]], model: type[M], url: str) -> list[M]:
        """Validate raw rows into ``model`` instances and evaluate the batch.

        Rows that fail validation are logged and dropped.

        Raises:
            LayoutShiftError: If too many rows failed.
        """
        self.start_batch(url)
        validated: list[M] = []
        for index, row in enumerate(rows):
            try:
                validated.append(model.model_validate(row))
            except ValidationError as exc:
                self.record_failure()
                log.debug(
                    "Row failed validation",
                    model=model.__name__,
                    row_index=index,
                    errors=exc.error_count(),
                )
            else:
                self.record_success()
        self.evaluate_batch()
        return validated

    def get_summary(self) -> dict[str, Any]:
        """Cumulative quality metrics for logging."""
        return {
            "total_attempts": self._total_attempts,
            "total_successes": self._total_successes,
            "total_failures": self._total_attempts - self._total_successes,
            "total_failure_rate": f"{self.total_failure_ratio:.1%}",
            "threshold": f"{self.config.watchdog_failure_threshold:.1%}",
        }

    def reset(self) -> None:
        """Reset all counters for a fresh monitoring session."""
        self._batch_attempts = 0
        self._batch_successes = 0
        self._total_attempts = 0
        self._total_successes = 0
        self._current_url = ""
        log.debug("Quality monitor reset")
