"""Company details, dividends and financials.

The detail page of a debenture or mutual fund shows the parent company's
name in its title block until the profile tab is activated; only then
does the page (and the ``security/profile`` API it calls) describe the
instrument itself. Activating that tab is therefore part of every scrape,
and every profile is classified (equity, debenture, mutual fund) from the
reported instrument type so the cleanup jobs can re-scrape a whole class.
"""

import asyncio
from typing import Any, Sequence

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Frame, Page, Response
from pydantic import BaseModel, Field, ValidationError

from config.settings import GlobalConfig, get_config
from nepse_ingest.browser import SessionManager
from nepse_ingest.exceptions import ExtractionFailed
from nepse_ingest.extractor import ExtractionStrategy, Sleep, StrategyChain
from nepse_ingest.logger import get_logger
from nepse_ingest.parsers import (
    dividends_from_table,
    financials_from_table,
    profile_from_api,
    profile_from_dom,
)
from nepse_ingest.synchronizer import Sink
from nepse_ingest.validator import (
    CompanyProfile,
    CompanyRecord,
    Dividend,
    Financial,
    SecurityRef,
)

log = get_logger(__name__)

PROFILE_TAB = "#profileTab"
PROFILE_SECTION = "#profile_section"
DETAIL_IFRAME = "#company_detail_iframe"
DIVIDEND_TAB = "#dividendTab"
DIVIDEND_TABLE = "#dividend table"
FINANCIAL_TAB = "#financialTab, #financialsTab, .nav-link:has-text('Financial')"
FINANCIAL_TABLE = "div[id*='financial'] table"

_READ_PROFILE_JS = """
() => {
    const clean = t => t ? t.replace(/\\s+/g, ' ').trim() : '';
    const title = document.querySelector('.company__title--details h1');
    let logo = document.querySelector('#profile_section .team-member img');
    if (!logo || (logo.getAttribute('src') || '').includes('placeholder')) {
        logo = document.querySelector('.company__title--logo img');
    }
    const metas = {};
    document.querySelectorAll('.company__title--metas li').forEach(li => {
        const text = li.innerText || '';
        const split = text.indexOf(':');
        if (split > 0) metas[clean(text.slice(0, split))] = clean(text.slice(split + 1));
    });
    const table = {};
    document.querySelectorAll('table tr').forEach(tr => {
        const th = tr.querySelector('th');
        const td = tr.querySelector('td');
        if (th && td) table[clean(th.innerText)] = clean(td.innerText);
    });
    return {
        title: title ? clean(title.innerText) : '',
        logo: logo ? logo.getAttribute('src') : '',
        metas,
        table,
    };
}
"""

_READ_TABLE_JS = """
(selector) => {
    const table = document.querySelector(selector);
    if (!table) return null;
    const headers = Array.from(table.querySelectorAll('thead th')).map(th => th.innerText.trim());
    const rows = Array.from(table.querySelectorAll('tbody tr')).map(
        tr => Array.from(tr.querySelectorAll('td')).map(td => td.innerText.trim())
    );
    return { headers, rows };
}
"""


class CompanyBatchResult(BaseModel):
    """Outcome of a multi-security scrape."""

    records: list[CompanyRecord] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.records)


def _validate_each(rows: list[dict[str, Any]], model: type[BaseModel]) -> list[Any]:
    valid = []
    for row in rows:
        try:
            valid.append(model.model_validate(row))
        except ValidationError as exc:
            log.debug("Row dropped", model=model.__name__, errors=exc.error_count())
    return valid


class CompanyDetailStrategy(ExtractionStrategy[CompanyRecord]):
    """Scrape one security's detail page (profile, dividends, financials)."""

    def __init__(self, security: SecurityRef, config: GlobalConfig | None = None) -> None:
        super().__init__(config)
        self.security = security

    @property
    def name(self) -> str:
        return "detail_page"

    @property
    def source_url(self) -> str:
        return self.config.company_detail_url(self.security.security_id)

    async def extract(self, session: SessionManager, page: Page) -> list[CompanyRecord]:
        security_id, symbol = self.security
        api: dict[str, Any] = {}

        async def capture(response: Response) -> None:
            url = response.url
            if "/api/nots/security/" not in url or f"/{security_id}" not in url:
                return
            # The profile endpoint answers 401 with a usable body
            if response.status not in (200, 401):
                return
            try:
                payload = await response.json()
            except (PlaywrightError, ValueError):
                return
            api["profile" if "/profile/" in url else "security"] = payload

        page.on("response", capture)
        await session.navigate(page, self.source_url)
        await self.wait_for_content(page, ".company__title--details", timeout_ms=5_000)
        await self._activate_profile_tab(page)

        if api:
            mapped = profile_from_api(
                api.get("profile"), api.get("security"), security_id, symbol, self.config.base_url
            )
            source = "api"
        else:
            scraped = await self._read_profile_dom(page)
            mapped = profile_from_dom(scraped, security_id, symbol, self.config.base_url)
            source = "dom"

        profiles = self.monitor.validate_rows([mapped], CompanyProfile, url=self.source_url)
        profile = profiles[0]
        log.debug(
            "Company profile extracted",
            symbol=symbol,
            source=source,
            instrument_class=profile.instrument_class.value,
        )

        dividends = await self._read_dividends(page)
        financials = await self._read_financials(page)
        return [CompanyRecord(profile=profile, dividends=dividends, financials=financials)]

    async def _activate_profile_tab(self, page: Page) -> None:
        tab = page.locator(PROFILE_TAB)
        if await tab.count() == 0:
            log.debug("Profile tab not present", symbol=self.security.symbol)
            return
        await tab.first.click()
        await self.wait_for_content(page, PROFILE_SECTION, timeout_ms=3_000)

    async def _read_profile_dom(self, page: Page) -> dict[str, Any]:
        target: Page | Frame = page
        handle = await page.query_selector(DETAIL_IFRAME)
        if handle is not None:
            frame = await handle.content_frame()
            if frame is not None:
                target = frame
                try:
                    await frame.wait_for_selector("table, .company__title--details", timeout=5_000)
                except PlaywrightError:
                    log.debug("Detail iframe content not ready", symbol=self.security.symbol)
        return await target.evaluate(_READ_PROFILE_JS) or {}

    async def _read_tab_table(self, page: Page, tab_selector: str, table_selector: str) -> dict | None:
        tab = page.locator(tab_selector)
        if await tab.count() == 0:
            return None
        await tab.first.click()
        await self.wait_for_content(page, f"{table_selector} tbody tr", timeout_ms=3_000)
        return await page.evaluate(_READ_TABLE_JS, table_selector)

    async def _read_dividends(self, page: Page) -> list[Dividend]:
        try:
            table = await self._read_tab_table(page, DIVIDEND_TAB, DIVIDEND_TABLE)
        except PlaywrightError as exc:
            log.warning("Dividend scrape failed", symbol=self.security.symbol, error=str(exc))
            return []
        if not table:
            return []
        rows = dividends_from_table(table["headers"], table["rows"], self.security.security_id)
        return _validate_each(rows, Dividend)

    async def _read_financials(self, page: Page) -> list[Financial]:
        try:
            table = await self._read_tab_table(page, FINANCIAL_TAB, FINANCIAL_TABLE)
        except PlaywrightError as exc:
            log.warning("Financials scrape failed", symbol=self.security.symbol, error=str(exc))
            return []
        if not table:
            return []
        rows = financials_from_table(table["headers"], table["rows"], self.security.security_id)
        return _validate_each(rows, Financial)


class CompanyScraper:
    """Scrapes company details for one or many securities.

    A batch continues past per-security extraction failures; each record
    is handed to the sink as soon as it is scraped so a long batch keeps
    its progress when interrupted.

    Example:
        scraper = CompanyScraper(session, config)
        result = await scraper.scrape_many(securities, sink=CompanySink(store))
    """

    def __init__(
        self,
        session: SessionManager,
        config: GlobalConfig | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.session = session
        self.config = config or get_config()
        self._sleep = sleep

    async def scrape_one(self, security: SecurityRef) -> CompanyRecord:
        """Scrape a single security.

        Raises:
            ExtractionFailed: After every attempt failed.
        """
        chain = StrategyChain(
            f"company_detail:{security.symbol}",
            [CompanyDetailStrategy(security, self.config)],
            self.session,
            self.config,
            sleep=self._sleep,
        )
        result = await chain.run()
        return result.items[0]

    async def scrape_many(
        self,
        securities: Sequence[SecurityRef],
        sink: Sink | None = None,
    ) -> CompanyBatchResult:
        """Scrape many securities, writing each record through ``sink``.

        Raises:
            LaunchError: If the browser cannot be started.
            StoreError: If the sink's durable store rejects a write.
        """
        result = CompanyBatchResult()
        total = len(securities)
        log.info("Company batch started", securities=total)

        for position, security in enumerate(securities, start=1):
            try:
                record = await self.scrape_one(security)
            except ExtractionFailed as exc:
                log.error(
                    "Company scrape failed",
                    symbol=security.symbol,
                    security_id=security.security_id,
                    error=exc.message,
                )
                result.failed.append(security.symbol)
                continue

            result.records.append(record)
            if sink is not None:
                await sink.write([record])

            if position % 10 == 0:
                log.info("Company batch progress", done=position, total=total)

        log.info(
            "Company batch finished",
            succeeded=result.succeeded,
            failed=len(result.failed),
        )
        return result

