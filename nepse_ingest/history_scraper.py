"""Daily index history from the indices page."""

import asyncio
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response

from config.settings import GlobalConfig, get_config
from nepse_ingest.browser import SessionManager
from nepse_ingest.exceptions import EmptyResultError
from nepse_ingest.extractor import (
    ExtractionResult,
    ExtractionStrategy,
    Sleep,
    StrategyChain,
    apply_page_size,
    largest_content,
)
from nepse_ingest.logger import get_logger
from nepse_ingest.parsers import index_history_from_api
from nepse_ingest.validator import IndexHistoryRecord

log = get_logger(__name__)

PRODUCT = "index_history"
API_MARKER = "/api/nots/index/history/"


class IndexHistoryApiStrategy(ExtractionStrategy[IndexHistoryRecord]):
    """Capture the paginated ``index/history`` payloads of the indices page."""

    @property
    def name(self) -> str:
        return "api_intercept"

    @property
    def source_url(self) -> str:
        return self.config.indices_url

    async def extract(self, session: SessionManager, page: Page) -> list[IndexHistoryRecord]:
        payloads: list[Any] = []

        async def capture(response: Response) -> None:
            if API_MARKER not in response.url:
                return
            try:
                payloads.append(await response.json())
            except (PlaywrightError, ValueError) as exc:
                log.debug("Unparsable history response", url=response.url, error=str(exc))

        page.on("response", capture)
        await session.navigate(page, self.source_url)
        await self.wait_for_content(page, "table", timeout_ms=30_000)

        refreshed = await apply_page_size(page, self.config.page_size, "index/history")
        if refreshed is not None:
            payloads.append(refreshed)

        records = largest_content(payloads)
        if not records:
            raise EmptyResultError(self.name, self.source_url, "No index history intercepted")

        rows = [index_history_from_api(record) for record in records]
        return self.monitor.validate_rows(rows, IndexHistoryRecord, url=self.source_url)


async def extract_index_history(
    session: SessionManager,
    config: GlobalConfig | None = None,
    sleep: Sleep = asyncio.sleep,
) -> ExtractionResult[IndexHistoryRecord]:
    """Extract the index history.

    Raises:
        ExtractionFailed: After every attempt failed.
    """
    config = config or get_config()
    chain = StrategyChain(
        PRODUCT, [IndexHistoryApiStrategy(config)], session, config, sleep=sleep
    )
    return await chain.run()
