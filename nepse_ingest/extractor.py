"""Extraction strategies and the ordered fallback chain.

This module provides an abstract base class for extraction strategies and
the chain that runs them. Each data product (today's prices, the market
summary, index history, a company profile) is obtained by one or more
strategies tried in priority order:

    attempt 1: strategy A -> strategy B -> strategy C
    (fixed delay)
    attempt 2: strategy A -> ...

The first strategy that yields a non-empty, schema-valid batch wins. Each
strategy runs on its own page under its own timeout, so a hung strategy
never blocks the next one. When every attempt is exhausted the chain
raises ``ExtractionFailed`` carrying the last strategy error; the
scheduler records it as a failed run.

Design Rationale:
    Strategies only read from the page; they never write anywhere. Rows
    are renamed into canonical models (``nepse_ingest.parsers``) and
    validated through the QualityMonitor before they leave the strategy.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from pydantic import BaseModel

from config.settings import GlobalConfig, get_config
from nepse_ingest.browser import SessionManager
from nepse_ingest.exceptions import (
    EmptyResultError,
    ExtractionFailed,
    LaunchError,
    StrategyTimeout,
)
from nepse_ingest.logger import get_logger
from nepse_ingest.validator import QualityMonitor

log = get_logger(__name__)

# Generic type variable for Pydantic models
T = TypeVar("T", bound=BaseModel)

Sleep = Callable[[float], Awaitable[None]]

PAGE_SIZE_SELECT = "div.box__filter--field select"
FILTER_BUTTON = "button.box__filter--search"


class ExtractionResult(BaseModel, Generic[T]):
    """Container for extraction results with metadata.

    Attributes:
        items: Validated items produced by the winning strategy.
        product: Data product name (``today_prices``, ``market_summary``...).
        strategy: Name of the strategy that produced the items.
        attempts: Attempt number (1-based) that succeeded.
        source_url: URL the winning strategy read from.
    """

    items: list[T]
    product: str
    strategy: str
    attempts: int
    source_url: str

    @property
    def count(self) -> int:
        return len(self.items)


class ExtractionStrategy(ABC, Generic[T]):
    """One way of obtaining a data product from the live site.

    Subclasses implement ``extract`` against a fresh page; the chain owns
    page creation, closing and the timeout.

    Example:
        class DomTableStrategy(ExtractionStrategy[PriceQuote]):
            async def extract(self, session, page) -> list[PriceQuote]:
                ...
    """

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self.monitor = QualityMonitor(self.config)

    @property
    @abstractmethod
    def name(self) -> str:
        """Short strategy identifier used in logs and results."""
        ...

    @property
    @abstractmethod
    def source_url(self) -> str:
        """Page the strategy navigates to."""
        ...

    @property
    def timeout_sec(self) -> float:
        return self.config.strategy_timeout_sec

    @abstractmethod
    async def extract(self, session: SessionManager, page: Page) -> list[T]:
        """Produce validated items from ``page``.

        Raises:
            ExtractionError: (or a subclass) when this strategy cannot
                produce a result; the chain moves on to the next strategy.
            LayoutShiftError: When too many rows fail validation.
        """
        ...

    async def wait_for_content(
        self,
        page: Page,
        selector: str,
        timeout_ms: int | None = None,
    ) -> bool:
        """Wait for a selector to appear.

        Returns:
            True if element appeared, False if timeout occurred.
        """
        timeout = timeout_ms or self.config.request_timeout_ms

        try:
            await page.wait_for_selector(selector, timeout=timeout)
            return True
        except PlaywrightError:
            log.warning("Timeout waiting for selector", selector=selector, timeout_ms=timeout)
            return False


class StrategyChain(Generic[T]):
    """Runs strategies in priority order with bounded, fixed-delay retries.

    Args:
        product: Name of the data product (used in logs and errors).
        strategies: Strategies in priority order.
        session: Shared browser session.
        config: Optional GlobalConfig. Uses singleton if not provided.
        sleep: Delay coroutine between attempts (injectable for tests).
    """

    def __init__(
        self,
        product: str,
        strategies: Sequence[ExtractionStrategy[T]],
        session: SessionManager,
        config: GlobalConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not strategies:
            raise ValueError("A strategy chain needs at least one strategy")
        self.product = product
        self.strategies = list(strategies)
        self.session = session
        self.config = config or get_config()
        self._sleep = sleep

    async def run(self) -> ExtractionResult[T]:
        """Execute the chain.

        Raises:
            ExtractionFailed: After every strategy failed on every attempt.
            LaunchError: If the browser cannot be started (not retried here).
        """
        max_attempts = self.config.extraction_max_attempts
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            for strategy in self.strategies:
                bound = log.bind(product=self.product, strategy=strategy.name, attempt=attempt)
                bound.info("Trying extraction strategy")
                try:
                    items = await self._run_strategy(strategy)
                except LaunchError:
                    raise
                except Exception as exc:
                    last_error = exc
                    bound.warning(
                        "Extraction strategy failed",
                        error_type=type(exc).__name__,
                        error=getattr(exc, "message", str(exc)),
                    )
                    continue

                bound.info("Extraction succeeded", items=len(items))
                return ExtractionResult[T](
                    items=items,
                    product=self.product,
                    strategy=strategy.name,
                    attempts=attempt,
                    source_url=strategy.source_url,
                )

            if attempt < max_attempts:
                delay = self.config.extraction_retry_delay_sec
                log.info(
                    "Retrying extraction",
                    product=self.product,
                    next_attempt=attempt + 1,
                    delay_sec=delay,
                )
                await self._sleep(delay)

        log.error(
            "All extraction attempts failed",
            product=self.product,
            attempts=max_attempts,
            last_error=type(last_error).__name__ if last_error else None,
        )
        raise ExtractionFailed(self.product, max_attempts, last_error)

    async def _run_strategy(self, strategy: ExtractionStrategy[T]) -> list[T]:
        page = await self.session.new_page()
        try:
            try:
                items = await asyncio.wait_for(
                    strategy.extract(self.session, page), timeout=strategy.timeout_sec
                )
            except TimeoutError as exc:
                raise StrategyTimeout(strategy.name, strategy.source_url, strategy.timeout_sec) from exc
        finally:
            await self.session.close_page(page)

        if not items:
            raise EmptyResultError(strategy.name, strategy.source_url)
        return items


def largest_content(payloads: Sequence[Any]) -> list[Any]:
    """Rows of the largest intercepted API payload.

    The site answers paginated endpoints with ``{"content": [...]}`` (and
    occasionally ``{"content": {id: row}}``); the payload requested after
    the page size was raised is the largest one.
    """
    best: list[Any] = []
    for payload in payloads:
        content = payload.get("content") if isinstance(payload, dict) else payload
        if isinstance(content, dict):
            content = list(content.values())
        if isinstance(content, list) and len(content) > len(best):
            best = content
    return best


async def apply_page_size(page: Page, size: int, api_marker: str) -> Any | None:
    """Raise the table page size and return the refreshed API payload.

    Pagination is best-effort: a missing selector or a response that never
    arrives is logged and None is returned, leaving the default page.
    """
    try:
        await page.select_option(PAGE_SIZE_SELECT, str(size), timeout=10_000)
        async with page.expect_response(
            lambda response: api_marker in response.url
            and "/api/" in response.url
            and response.status == 200,
            timeout=15_000,
        ) as response_info:
            await page.click(FILTER_BUTTON, timeout=5_000)
        response = await response_info.value
        return await response.json()
    except (PlaywrightError, ValueError) as exc:
        log.warning("Pagination change failed", page_size=size, error=str(exc))
        return None
