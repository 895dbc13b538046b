"""Today's prices for every listed security.

Three strategies are tried in this order:

1. ``api_intercept`` - listen to the page's own ``today-price`` API calls
   while it loads and after the page size is raised.
2. ``csv_download`` - click the page's CSV export and parse the file with
   pandas.
3. ``dom_table`` - read the rendered table.

The API is the richest source (security ids, 52-week bounds, last update
time); the DOM table is the most robust one.
"""

import asyncio
from pathlib import Path
from typing import Any

import pandas as pd
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response

from config.settings import GlobalConfig, get_config
from nepse_ingest.browser import SessionManager
from nepse_ingest.exceptions import EmptyResultError, SelectorNotFoundError
from nepse_ingest.extractor import (
    ExtractionResult,
    ExtractionStrategy,
    Sleep,
    StrategyChain,
    apply_page_size,
    largest_content,
)
from nepse_ingest.logger import get_logger
from nepse_ingest.market_time import now_local
from nepse_ingest.parsers import price_from_api, price_from_table_row
from nepse_ingest.validator import PriceQuote

log = get_logger(__name__)

PRODUCT = "today_prices"
API_MARKER = "today-price"
DOWNLOAD_BUTTON = ".download-csv"

# Reads the first table with more than five header cells
_READ_TABLE_JS = """
() => {
    const table = Array.from(document.querySelectorAll('table'))
        .find(t => t.querySelectorAll('th').length > 5);
    if (!table) return null;
    const headers = Array.from(table.querySelectorAll('th')).map(th => th.textContent.trim());
    const rows = Array.from(table.querySelectorAll('tbody tr')).map(
        tr => Array.from(tr.querySelectorAll('td')).map(td => td.textContent.trim())
    );
    return { headers, rows };
}
"""


def read_price_csv(path: Path) -> list[dict[str, Any]]:
    """Load the exported price file as a list of header -> text rows."""
    try:
        frame = pd.read_csv(path, dtype=str, keep_default_na=False)
    except pd.errors.EmptyDataError:
        return []
    frame.columns = [str(column).strip() for column in frame.columns]
    return frame.to_dict(orient="records")


def rows_from_table(table: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Zip the headers of a scraped table onto each of its rows."""
    if not table:
        return []
    headers = table.get("headers") or []
    rows = []
    for cells in table.get("rows") or []:
        row = {header: cells[index] for index, header in enumerate(headers) if index < len(cells)}
        if row:
            rows.append(row)
    return rows


class ApiInterceptStrategy(ExtractionStrategy[PriceQuote]):
    """Capture the JSON the today-price page fetches for itself."""

    @property
    def name(self) -> str:
        return "api_intercept"

    @property
    def source_url(self) -> str:
        return self.config.today_price_url

    async def extract(self, session: SessionManager, page: Page) -> list[PriceQuote]:
        payloads: list[Any] = []

        async def capture(response: Response) -> None:
            if API_MARKER not in response.url or "/api/" not in response.url:
                return
            if response.status != 200:
                return
            try:
                payloads.append(await response.json())
            except (PlaywrightError, ValueError) as exc:
                log.debug("Unparsable API response", url=response.url, error=str(exc))

        page.on("response", capture)
        await session.navigate(page, self.source_url)
        await self.wait_for_content(page, "table", timeout_ms=30_000)

        refreshed = await apply_page_size(page, self.config.page_size, API_MARKER)
        if refreshed is not None:
            payloads.append(refreshed)

        records = largest_content(payloads)
        if not records:
            raise EmptyResultError(self.name, self.source_url, "No today-price API payload captured")

        business_date = now_local(self.config).date()
        rows = [price_from_api(record, business_date) for record in records]
        log.debug("API records captured", records=len(rows))
        return self.monitor.validate_rows(rows, PriceQuote, url=self.source_url)


class CsvDownloadStrategy(ExtractionStrategy[PriceQuote]):
    """Download the page's CSV export and parse it."""

    @property
    def name(self) -> str:
        return "csv_download"

    @property
    def source_url(self) -> str:
        return self.config.today_price_url

    async def extract(self, session: SessionManager, page: Page) -> list[PriceQuote]:
        await session.navigate(page, self.source_url)

        if not await self.wait_for_content(page, DOWNLOAD_BUTTON, timeout_ms=15_000):
            raise SelectorNotFoundError(self.name, DOWNLOAD_BUTTON, self.source_url)

        async with page.expect_download() as download_info:
            await page.click(DOWNLOAD_BUTTON)
        download = await download_info.value

        target_dir = session.profile_dir or self.config.output_dir
        target = Path(target_dir) / (download.suggested_filename or "today-price.csv")
        await download.save_as(target)
        log.debug("Price file downloaded", path=str(target))

        business_date = now_local(self.config).date()
        rows = [
            mapped
            for mapped in (price_from_table_row(row, business_date) for row in read_price_csv(target))
            if mapped is not None
        ]
        if not rows:
            raise EmptyResultError(self.name, self.source_url, "Downloaded file has no rows")
        return self.monitor.validate_rows(rows, PriceQuote, url=self.source_url)


class DomTableStrategy(ExtractionStrategy[PriceQuote]):
    """Read the rendered price table."""

    @property
    def name(self) -> str:
        return "dom_table"

    @property
    def source_url(self) -> str:
        return self.config.today_price_url

    async def extract(self, session: SessionManager, page: Page) -> list[PriceQuote]:
        await session.navigate(page, self.source_url)

        if not await self.wait_for_content(page, "table, .table-responsive", timeout_ms=15_000):
            raise SelectorNotFoundError(self.name, "table", self.source_url)

        await apply_page_size(page, self.config.page_size, API_MARKER)
        await page.wait_for_timeout(1_000)

        table = await page.evaluate(_READ_TABLE_JS)
        business_date = now_local(self.config).date()
        rows = [
            mapped
            for mapped in (price_from_table_row(row, business_date) for row in rows_from_table(table))
            if mapped is not None
        ]
        if not rows:
            raise EmptyResultError(self.name, self.source_url, "No rows in price table")
        return self.monitor.validate_rows(rows, PriceQuote, url=self.source_url)


def price_strategies(config: GlobalConfig | None = None) -> list[ExtractionStrategy[PriceQuote]]:
    """Strategies in priority order."""
    config = config or get_config()
    return [
        ApiInterceptStrategy(config),
        CsvDownloadStrategy(config),
        DomTableStrategy(config),
    ]


async def extract_today_prices(
    session: SessionManager,
    config: GlobalConfig | None = None,
    sleep: Sleep = asyncio.sleep,
) -> ExtractionResult[PriceQuote]:
    """Extract today's prices through the fallback chain.

    Raises:
        ExtractionFailed: After every strategy failed on every attempt.
    """
    config = config or get_config()
    chain = StrategyChain(PRODUCT, price_strategies(config), session, config, sleep=sleep)
    return await chain.run()
