"""Market summary: NEPSE index, turnover, breadth and trading status.

The homepage loads three internal API payloads (``nepse-index``,
``market-summary`` and ``market-open``) that together describe the whole
market. When they cannot be captured the visible page text is parsed
instead.
"""

import asyncio
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response

from config.settings import GlobalConfig, get_config
from nepse_ingest.browser import SessionManager
from nepse_ingest.exceptions import EmptyResultError
from nepse_ingest.extractor import ExtractionResult, ExtractionStrategy, Sleep, StrategyChain
from nepse_ingest.logger import get_logger
from nepse_ingest.market_time import now_local
from nepse_ingest.parsers import breadth_from_text, index_from_api, index_from_page_text
from nepse_ingest.validator import MarketIndexSnapshot

log = get_logger(__name__)

PRODUCT = "market_summary"

API_MARKERS = {
    "indices": "nepse-index",
    "summary": "market-summary",
    "open": "market-open",
}


class HomepageApiStrategy(ExtractionStrategy[MarketIndexSnapshot]):
    """Combine the homepage's own API payloads."""

    poll_interval_ms = 500
    max_polls = 20

    @property
    def name(self) -> str:
        return "api_intercept"

    @property
    def source_url(self) -> str:
        return self.config.base_url

    async def extract(self, session: SessionManager, page: Page) -> list[MarketIndexSnapshot]:
        payloads: dict[str, Any] = {}

        async def capture(response: Response) -> None:
            if "/api/" not in response.url or response.status != 200:
                return
            for key, marker in API_MARKERS.items():
                if marker in response.url:
                    try:
                        payloads[key] = await response.json()
                    except (PlaywrightError, ValueError) as exc:
                        log.debug("Unparsable API response", url=response.url, error=str(exc))
                    return

        page.on("response", capture)
        await session.navigate(page, self.source_url)

        for _ in range(self.max_polls):
            if len(payloads) == len(API_MARKERS):
                break
            await page.wait_for_timeout(self.poll_interval_ms)

        if "indices" not in payloads:
            raise EmptyResultError(self.name, self.source_url, "No nepse-index payload captured")

        today = now_local(self.config).date()
        mapped = index_from_api(
            payloads.get("indices"), payloads.get("summary"), payloads.get("open"), today
        )
        if mapped is None:
            raise EmptyResultError(self.name, self.source_url, "NEPSE index missing from payload")

        body_text = await page.inner_text("body")
        mapped.update(breadth_from_text(body_text))
        log.debug("Market payloads captured", captured=sorted(payloads))
        return self.monitor.validate_rows([mapped], MarketIndexSnapshot, url=self.source_url)


class HomepageTextStrategy(ExtractionStrategy[MarketIndexSnapshot]):
    """Parse the rendered homepage text."""

    @property
    def name(self) -> str:
        return "page_text"

    @property
    def source_url(self) -> str:
        return self.config.base_url

    async def extract(self, session: SessionManager, page: Page) -> list[MarketIndexSnapshot]:
        await session.navigate(page, self.source_url)
        await self.wait_for_content(page, "text=NEPSE Index", timeout_ms=20_000)

        body_text = await page.inner_text("body")
        mapped = index_from_page_text(body_text, now_local(self.config).date())
        if mapped is None:
            raise EmptyResultError(self.name, self.source_url, "NEPSE index not found in page text")
        return self.monitor.validate_rows([mapped], MarketIndexSnapshot, url=self.source_url)


def market_strategies(
    config: GlobalConfig | None = None,
) -> list[ExtractionStrategy[MarketIndexSnapshot]]:
    config = config or get_config()
    return [HomepageApiStrategy(config), HomepageTextStrategy(config)]


async def extract_market_summary(
    session: SessionManager,
    config: GlobalConfig | None = None,
    sleep: Sleep = asyncio.sleep,
) -> ExtractionResult[MarketIndexSnapshot]:
    """Extract the market summary through the fallback chain.

    Raises:
        ExtractionFailed: After every strategy failed on every attempt.
    """
    config = config or get_config()
    chain = StrategyChain(PRODUCT, market_strategies(config), session, config, sleep=sleep)
    return await chain.run()
