"""Raw-record normalization for the exchange website.

The site serves the same facts in several shapes: camelCase JSON from its
internal API, a CSV export whose headers change between releases, and
rendered HTML tables. Every function here maps one raw shape to a plain
dictionary keyed by the canonical model field names, so renaming happens
exactly once, at the extractor boundary.

Nothing in this module touches the network or the browser.
"""

import math
import re
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Sequence

from nepse_ingest.market_time import format_status_time

NEPSE_INDEX_ID = 58
NEPSE_INDEX_NAME = "NEPSE Index"

_MISSING_TOKENS = {"", "-", "--", "n/a", "na", "null", "none", "nan"}
_NUMBER_PATTERN = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_CLOCK_WITH_SECONDS = re.compile(r"^(\d{1,2}:\d{2}):\d{2}(\s*[AaPp][Mm])$")
_TRAILING_SYMBOL = re.compile(r"\s*\([A-Z0-9]+\)\s*$")

_PRICE_COLUMNS: dict[str, tuple[str, ...]] = {
    "symbol": ("symbol", "scriptsymbol", "script", "stocksymbol"),
    "security_name": ("securityname", "companyname", "name"),
    "security_id": ("securityid", "id"),
    "business_date": ("businessdate", "date"),
    "open_price": ("openprice", "open"),
    "high_price": ("highprice", "high", "max", "maxprice"),
    "low_price": ("lowprice", "low", "min", "minprice"),
    "close_price": (
        "lastupdatedprice",
        "ltp",
        "lasttradedprice",
        "closingprice",
        "closeprice",
        "close",
    ),
    "previous_close": (
        "previousdaycloseprice",
        "previousclose",
        "prevclose",
        "previousclosing",
    ),
    "volume": ("totaltradedquantity", "qty", "quantity", "volume", "tradedquantity"),
    "turnover": ("totaltradedvalue", "turnover", "amount", "value"),
    "total_trades": ("totaltrades", "trades", "nooftransactions", "transactions"),
    "average_traded_price": ("averagetradedprice", "avgtradedprice", "atp"),
    "market_capitalization": ("marketcapitalization", "marketcap"),
    "fifty_two_week_high": ("fiftytwoweekhigh", "52weekhigh"),
    "fifty_two_week_low": ("fiftytwoweeklow", "52weeklow"),
    "last_updated_time": ("lastupdatedtime",),
}


def parse_number(value: Any) -> float:
    """Parse a numeric value as the site renders it.

    Accepts numbers, thousands-separated strings (``"1,234.5"``) and the
    placeholders the site uses for missing values (``"-"``, ``"N/A"``,
    ``""``), which become 0.0. Text with a leading number keeps that number
    (``"123.4*"`` -> 123.4). Never raises.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else 0.0

    text = str(value).replace(",", "").strip()
    if text.lower() in _MISSING_TOKENS:
        return 0.0

    match = _NUMBER_PATTERN.match(text)
    if match is None:
        return 0.0
    try:
        number = float(match.group(0))
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def clean_text(value: Any) -> str:
    """Collapse runs of whitespace and strip; None becomes ``""``."""
    if value is None:
        return ""
    return " ".join(str(value).split())


def normalize_header(text: Any) -> str:
    """Lower-case a column header and keep only ``[a-z0-9]``."""
    return re.sub(r"[^a-z0-9]", "", clean_text(text).lower())


def normalize_market_status(text: str) -> str:
    """Map the site's status words to ``PRE_OPEN``, ``OPEN`` or ``CLOSED``."""
    token = re.sub(r"[^A-Z]", "", text.upper())
    if token.startswith("PRE"):
        return "PRE_OPEN"
    if token in {"OPEN", "MARKETOPEN", "TRUE", "Y", "YES"}:
        return "OPEN"
    return "CLOSED"


def detect_market_status(body_text: str) -> str:
    """Detect the trading status from the homepage text.

    Explicit pre-open wording wins unless the page also says closed; an
    explicit open marker comes next; everything else, including holidays
    and pages without any marker, is ``CLOSED``.
    """
    lower = body_text.lower()

    is_pre_open = (
        "pre open" in lower
        or "pre-open" in lower
        or re.search(r"status[:\s]*pre[- ]?open", body_text, re.IGNORECASE) is not None
    )
    is_closed = (
        "market closed" in lower
        or "market close" in lower
        or re.search(r"status[:\s]*closed?\b", body_text, re.IGNORECASE) is not None
    )
    is_open = (
        ("market open" in lower and "pre" not in lower)
        or re.search(r"status[:\s]*open(?!\s*-)", body_text, re.IGNORECASE) is not None
    )

    if is_pre_open and not is_closed:
        return "PRE_OPEN"
    if is_open and not is_closed and not is_pre_open:
        return "OPEN"
    return "CLOSED"


def normalize_clock_text(text: str) -> str:
    """Drop seconds from a 12-hour clock string (``"3:00:00 PM"`` -> ``"3:00 PM"``)."""
    text = clean_text(text)
    match = _CLOCK_WITH_SECONDS.match(text)
    if match is None:
        return text
    return f"{match.group(1)} {match.group(2).strip().upper()}"


def _pick(row: Mapping[str, Any], candidates: Iterable[str]) -> Any:
    for key in candidates:
        value = row.get(key)
        if value not in (None, ""):
            return value
    return None


def price_from_api(record: Mapping[str, Any], business_date: date) -> dict[str, Any]:
    """Map one ``today-price`` API record to ``PriceQuote`` fields.

    The close is the last updated price while the market is open, falling
    back to the last traded and the official close price.
    """
    close = parse_number(
        record.get("lastUpdatedPrice") or record.get("lastTradedPrice") or record.get("closePrice")
    )
    previous_close = parse_number(record.get("previousDayClosePrice"))
    change = close - previous_close if close and previous_close else 0.0
    percentage_change = change / previous_close * 100 if previous_close else 0.0

    return {
        "symbol": record.get("symbol"),
        "security_id": record.get("securityId"),
        "security_name": clean_text(record.get("securityName")),
        "business_date": record.get("businessDate") or business_date,
        "open_price": record.get("openPrice"),
        "high_price": record.get("highPrice"),
        "low_price": record.get("lowPrice"),
        "close_price": close,
        "last_traded_price": close,
        "previous_close": previous_close,
        "change": change,
        "percentage_change": percentage_change,
        "volume": record.get("totalTradedQuantity"),
        "turnover": record.get("totalTradedValue"),
        "total_trades": record.get("totalTrades"),
        "average_traded_price": record.get("averageTradedPrice"),
        "market_capitalization": record.get("marketCapitalization"),
        "fifty_two_week_high": record.get("fiftyTwoWeekHigh"),
        "fifty_two_week_low": record.get("fiftyTwoWeekLow"),
        "last_updated_time": clean_text(record.get("lastUpdatedTime")) or None,
    }


def price_from_table_row(row: Mapping[str, Any], business_date: date) -> dict[str, Any] | None:
    """Map a CSV or HTML table row to ``PriceQuote`` fields.

    Keys of ``row`` are column headers in any spelling; they are normalized
    before lookup. Rows without a symbol return None.
    """
    normalized = {normalize_header(key): value for key, value in row.items()}
    symbol = clean_text(_pick(normalized, _PRICE_COLUMNS["symbol"])).upper()
    if not symbol:
        return None

    values = {
        field: _pick(normalized, columns)
        for field, columns in _PRICE_COLUMNS.items()
        if field != "symbol"
    }
    close = parse_number(values["close_price"])
    previous_close = parse_number(values["previous_close"])

    mapped: dict[str, Any] = {
        "symbol": symbol,
        "security_id": values["security_id"],
        "security_name": clean_text(values["security_name"]),
        "business_date": values["business_date"] or business_date,
        "open_price": values["open_price"],
        "high_price": values["high_price"],
        "low_price": values["low_price"],
        "close_price": close,
        "last_traded_price": close,
        "previous_close": previous_close,
        "change": close - previous_close if previous_close else 0.0,
        "percentage_change": (close - previous_close) / previous_close * 100
        if previous_close
        else 0.0,
        "volume": values["volume"],
        "turnover": values["turnover"],
        "total_trades": values["total_trades"],
        "average_traded_price": values["average_traded_price"],
        "market_capitalization": values["market_capitalization"],
        "fifty_two_week_high": values["fifty_two_week_high"],
        "fifty_two_week_low": values["fifty_two_week_low"],
        "last_updated_time": clean_text(values["last_updated_time"]) or None,
    }
    return mapped


def _as_of(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None


def index_from_api(
    indices: Sequence[Mapping[str, Any]] | None,
    summary: Sequence[Mapping[str, Any]] | None,
    market_open: Mapping[str, Any] | None,
    trading_date: date,
) -> dict[str, Any] | None:
    """Combine the homepage API payloads into ``MarketIndexSnapshot`` fields.

    Args:
        indices: ``nepse-index`` payload (list of index objects).
        summary: ``market-summary`` payload (``detail``/``value`` pairs).
        market_open: ``market-open`` payload (``isOpen``, ``asOf``).
        trading_date: Business date used when ``asOf`` is missing.

    Returns:
        Mapped fields or None when no NEPSE index entry is present.
    """
    entry = None
    for item in indices or []:
        if item.get("id") == NEPSE_INDEX_ID or clean_text(item.get("index")) == NEPSE_INDEX_NAME:
            entry = item
            break
    if entry is None:
        return None

    mapped: dict[str, Any] = {
        "index_value": entry.get("currentValue") or entry.get("close"),
        "change": entry.get("change"),
        "percentage_change": entry.get("perChange"),
        "trading_date": trading_date,
    }

    for item in summary or []:
        detail = clean_text(item.get("detail")).lower()
        if "turnover" in detail:
            mapped["turnover"] = item.get("value")
        elif "traded shares" in detail:
            mapped["traded_shares"] = item.get("value")
        elif "transactions" in detail:
            mapped["transactions"] = item.get("value")

    if market_open:
        mapped["status"] = normalize_market_status(str(market_open.get("isOpen") or ""))
        as_of = _as_of(market_open.get("asOf"))
        if as_of is not None:
            mapped["status_date"] = as_of.date().isoformat()
            mapped["status_time"] = format_status_time(as_of)
            mapped["trading_date"] = as_of.date()

    return mapped


_INDEX_TEXT = re.compile(
    r"NEPSE\s+Index\s*[:\n]?\s*([\d,]+\.\d+)\s*([-+]?[\d,]*\.?\d+)?\s*\(?\s*([-+]?[\d.]+)?\s*%?",
    re.IGNORECASE,
)
_AS_OF_TEXT = re.compile(
    r"As\s+of\s*:?\s*(?:(\d{4}-\d{2}-\d{2}|\w+\s+\d{1,2},?\s+\d{4})\s*,?\s*)?"
    r"(\d{1,2}:\d{2}(?::\d{2})?\s*[AaPp][Mm])",
)
_BREADTH_TEXT = {
    "advanced": re.compile(r"Advanced\s*[:\n]?\s*(\d+)", re.IGNORECASE),
    "declined": re.compile(r"Declined\s*[:\n]?\s*(\d+)", re.IGNORECASE),
    "unchanged": re.compile(r"Unchanged\s*[:\n]?\s*(\d+)", re.IGNORECASE),
}
_SUMMARY_TEXT = {
    "turnover": re.compile(r"Total\s+Turnover[^\d]*([\d,]+(?:\.\d+)?)", re.IGNORECASE),
    "traded_shares": re.compile(r"Total\s+Traded\s+Shares[^\d]*([\d,]+(?:\.\d+)?)", re.IGNORECASE),
    "transactions": re.compile(r"Total\s+Transactions[^\d]*([\d,]+)", re.IGNORECASE),
}


def breadth_from_text(body_text: str) -> dict[str, int]:
    """Advance/decline/unchanged counts shown on the homepage."""
    counts: dict[str, int] = {}
    for field, pattern in _BREADTH_TEXT.items():
        match = pattern.search(body_text)
        if match:
            counts[field] = int(match.group(1))
    return counts


def index_from_page_text(body_text: str, trading_date: date) -> dict[str, Any] | None:
    """Read the market summary from the rendered homepage text.

    Returns:
        Mapped ``MarketIndexSnapshot`` fields or None when no index value is
        visible on the page.
    """
    match = _INDEX_TEXT.search(body_text)
    if match is None:
        return None

    mapped: dict[str, Any] = {
        "index_value": match.group(1),
        "change": match.group(2) or 0,
        "percentage_change": match.group(3) or 0,
        "status": detect_market_status(body_text),
        "trading_date": trading_date,
    }

    as_of = _AS_OF_TEXT.search(body_text)
    if as_of:
        mapped["status_time"] = normalize_clock_text(as_of.group(2))
        if as_of.group(1):
            mapped["status_date"] = clean_text(as_of.group(1))

    for field, pattern in _SUMMARY_TEXT.items():
        found = pattern.search(body_text)
        if found:
            mapped[field] = found.group(1)

    mapped.update(breadth_from_text(body_text))
    return mapped


def classify_instrument(instrument_type: str, company_name: str = "") -> str:
    """Classify a security as equity, debenture, mutual fund or other.

    The instrument type reported by the site decides; the company name is
    only consulted when the type is missing.

    Returns:
        An ``InstrumentClass`` value.
    """
    kind = clean_text(instrument_type).lower()
    if kind:
        if "debenture" in kind or "bond" in kind:
            return "debenture"
        if "mutual" in kind or "fund" in kind:
            return "mutual_fund"
        if "equity" in kind or "ordinary" in kind or "share" in kind:
            return "equity"
        return "other"

    name = clean_text(company_name).lower()
    if "debenture" in name or re.search(r"\bbond\b", name):
        return "debenture"
    if "mutual fund" in name or re.search(r"\b(yojana|fund|scheme)\b", name):
        return "mutual_fund"
    return "other"


def _absolute_logo(path: Any, base_url: str) -> str:
    path = clean_text(path)
    if path.startswith("assets/"):
        return f"{base_url}{path}"
    return path


def profile_from_api(
    profile: Mapping[str, Any] | None,
    security: Mapping[str, Any] | None,
    security_id: int,
    symbol: str,
    base_url: str,
) -> dict[str, Any]:
    """Map the ``security`` and ``security/profile`` API payloads to ``CompanyProfile`` fields."""
    mapped: dict[str, Any] = {"security_id": security_id, "symbol": symbol}

    if profile:
        mapped["company_name"] = profile.get("companyName")
        mapped["email"] = profile.get("companyEmail")
        mapped["logo_url"] = _absolute_logo(profile.get("logoFilePath"), base_url)

    if security:
        details = security.get("security") or {}
        daily = security.get("securityDailyTradeDto") or {}
        company = details.get("companyId") or {}
        sector = company.get("sectorMaster") or {}

        instrument = details.get("instrumentType")
        if isinstance(instrument, Mapping):
            instrument = instrument.get("description") or instrument.get("code")
        mapped["instrument_type"] = instrument

        if not mapped.get("company_name"):
            mapped["company_name"] = details.get("securityName") or company.get("companyName")
        mapped["status"] = details.get("activeStatus") or details.get("status")
        mapped["permitted_to_trade"] = details.get("permittedToTrade") or "No"
        mapped["listing_date"] = details.get("listingDate")
        mapped["isin"] = details.get("isin")
        mapped["face_value"] = details.get("faceValue")
        mapped["share_group"] = (details.get("shareGroupId") or {}).get("name")
        mapped["sector_name"] = sector.get("sectorDescription")
        mapped["regulatory_body"] = sector.get("regulatoryBody")
        mapped["website"] = company.get("companyWebsite")
        mapped["share_registrar"] = company.get("companyContactPerson")

        mapped["last_traded_price"] = daily.get("lastTradedPrice")
        mapped["total_traded_quantity"] = daily.get("totalTradeQuantity")
        mapped["total_trades"] = daily.get("totalTrades")
        mapped["previous_close"] = daily.get("previousClose")
        mapped["high_price"] = daily.get("highPrice")
        mapped["low_price"] = daily.get("lowPrice")
        mapped["open_price"] = daily.get("openPrice")
        mapped["close_price"] = daily.get("closePrice")
        mapped["fifty_two_week_high"] = daily.get("fiftyTwoWeekHigh")
        mapped["fifty_two_week_low"] = daily.get("fiftyTwoWeekLow")
        mapped["business_date"] = daily.get("businessDate")

        average = parse_number(daily.get("averageTradedPrice"))
        quantity = parse_number(daily.get("totalTradeQuantity"))
        if not average and quantity > 0:
            average = parse_number(daily.get("totalTradeValue")) / quantity
        mapped["average_traded_price"] = average

        mapped["total_listed_shares"] = security.get("stockListedShares")
        mapped["paid_up_capital"] = security.get("paidUpCapital")
        mapped["market_capitalization"] = security.get("marketCapitalization")
        mapped["promoter_shares"] = security.get("promoterShares")
        mapped["public_shares"] = security.get("publicShares")
        mapped["promoter_percentage"] = security.get("promoterPercentage")
        mapped["public_percentage"] = security.get("publicPercentage")

    mapped["instrument_class"] = classify_instrument(
        clean_text(mapped.get("instrument_type")), clean_text(mapped.get("company_name"))
    )
    return {key: value for key, value in mapped.items() if value is not None}


def _split_pair(text: Any) -> tuple[float, float]:
    parts = clean_text(text).split("/")
    first = parse_number(parts[0]) if parts and parts[0] else 0.0
    second = parse_number(parts[1]) if len(parts) > 1 else 0.0
    return first, second


def profile_from_dom(
    scraped: Mapping[str, Any],
    security_id: int,
    symbol: str,
    base_url: str,
) -> dict[str, Any]:
    """Map the rendered detail page to ``CompanyProfile`` fields.

    Args:
        scraped: ``title``, ``metas`` (label -> value from the title block)
            and ``table`` (row label -> cell text) read from the page.
    """
    table: Mapping[str, Any] = scraped.get("table") or {}
    metas: Mapping[str, Any] = scraped.get("metas") or {}

    def cell(label: str) -> str:
        wanted = label.lower()
        labels = {clean_text(key).lower(): value for key, value in table.items()}
        if wanted in labels:
            return clean_text(labels[wanted])
        for key, value in labels.items():
            if wanted in key:
                return clean_text(value)
        return ""

    high, low = _split_pair(cell("High Price / Low Price"))
    week_high, week_low = _split_pair(cell("52 Week High / 52 Week Low"))
    paid_up_value = parse_number(cell("Total Paid up Value"))
    company_name = _TRAILING_SYMBOL.sub("", clean_text(scraped.get("title")))
    instrument_type = cell("Instrument Type")

    mapped = {
        "security_id": security_id,
        "symbol": symbol,
        "company_name": company_name,
        "sector_name": metas.get("Sector"),
        "email": metas.get("Email Address"),
        "status": metas.get("Status"),
        "permitted_to_trade": metas.get("Permitted to Trade"),
        "logo_url": _absolute_logo(scraped.get("logo"), base_url),
        "instrument_type": instrument_type,
        "instrument_class": classify_instrument(instrument_type, company_name),
        "listing_date": cell("Listing Date"),
        "last_traded_price": cell("Last Traded Price"),
        "total_traded_quantity": cell("Total Traded Quantity"),
        "total_trades": cell("Total Trades"),
        "previous_close": cell("Previous Day Close Price"),
        "high_price": high,
        "low_price": low,
        "fifty_two_week_high": week_high,
        "fifty_two_week_low": week_low,
        "open_price": cell("Open Price"),
        "close_price": cell("Close Price").replace("*", ""),
        "total_listed_shares": cell("Total Listed Shares"),
        "market_capitalization": cell("Market Capitalization"),
        "paid_up_capital": paid_up_value or cell("Paid Up Capital"),
        "issue_manager": cell("Issue Manager"),
        "share_registrar": cell("Share Registrar"),
        "website": cell("Website"),
        "promoter_shares": cell("Promoter Shares"),
        "public_shares": cell("Public Shares"),
        "average_traded_price": cell("Average Traded Price"),
    }
    return {key: value for key, value in mapped.items() if value is not None}


def _column(headers: Sequence[str], keywords: Sequence[str]) -> int:
    """Index of the first header containing any keyword, or -1."""
    lowered = [clean_text(header).lower() for header in headers]
    for index, header in enumerate(lowered):
        if any(keyword in header for keyword in keywords):
            return index
    return -1


def _cell(cells: Sequence[Any], index: int) -> str:
    if 0 <= index < len(cells):
        return clean_text(cells[index])
    return ""


def dividends_from_table(
    headers: Sequence[str], rows: Sequence[Sequence[Any]], security_id: int
) -> list[dict[str, Any]]:
    """Map the dividend tab table to ``Dividend`` fields.

    Rows with fewer than three cells or without a fiscal year are skipped.
    """
    fiscal = _column(headers, ("fiscal", "year"))
    bonus = _column(headers, ("bonus",))
    cash = _column(headers, ("cash",))
    total = _column(headers, ("total",))
    book_close = _column(headers, ("book", "closure", "date"))

    dividends = []
    for cells in rows:
        if len(cells) < 3:
            continue
        fiscal_year = _cell(cells, fiscal) or _cell(cells, 1)
        if not fiscal_year:
            continue
        dividends.append(
            {
                "security_id": security_id,
                "fiscal_year": fiscal_year,
                "bonus_share": _cell(cells, bonus),
                "cash_dividend": _cell(cells, cash),
                "total_dividend": _cell(cells, total),
                "book_close_date": _cell(cells, book_close),
            }
        )
    return dividends


def financials_from_table(
    headers: Sequence[str], rows: Sequence[Sequence[Any]], security_id: int
) -> list[dict[str, Any]]:
    """Map the financials tab table to ``Financial`` fields.

    Header keywords locate each column; the positions the site has used
    historically are the fallback when a header is missing.
    """
    fiscal = _column(headers, ("fiscal", "year"))
    quarter = _column(headers, ("quart",))
    paid_up = _column(headers, ("paid", "capital"))
    profit = _column(headers, ("net profit", "profit", "amount"))
    eps = _column(headers, ("eps", "earnings"))
    net_worth = _column(headers, ("net worth", "book value"))
    pe_ratio = _column(headers, ("p/e", "price earning", "p.e", "ratio"))

    def number(cells: Sequence[Any], index: int, fallback: int) -> float:
        return parse_number(_cell(cells, index)) or parse_number(_cell(cells, fallback))

    financials = []
    for cells in rows:
        if len(cells) < 3:
            continue
        fiscal_year = _cell(cells, fiscal) or _cell(cells, 1)
        if not fiscal_year:
            continue
        financials.append(
            {
                "security_id": security_id,
                "fiscal_year": fiscal_year,
                "quarter": _cell(cells, quarter) or _cell(cells, 3),
                "paid_up_capital": number(cells, paid_up, 6),
                "net_profit": number(cells, profit, 5),
                "earnings_per_share": number(cells, eps, 8),
                "net_worth_per_share": number(cells, net_worth, 4),
                "price_earnings_ratio": number(cells, pe_ratio, 7),
            }
        )
    return financials


def index_history_from_api(record: Mapping[str, Any]) -> dict[str, Any]:
    """Map one ``index/history`` API row to ``IndexHistoryRecord`` fields."""
    index_id = record.get("exchangeIndexId") or record.get("indexId") or NEPSE_INDEX_ID
    return {
        "business_date": record.get("businessDate"),
        "exchange_index_id": index_id,
        "index_name": clean_text(record.get("indexName") or record.get("index"))
        or (NEPSE_INDEX_NAME if index_id == NEPSE_INDEX_ID else ""),
        "closing_index": record.get("closingIndex") or record.get("close"),
        "open_index": record.get("openIndex") or record.get("open"),
        "high_index": record.get("highIndex") or record.get("high"),
        "low_index": record.get("lowIndex") or record.get("low"),
        "fifty_two_week_high": record.get("fiftyTwoWeekHigh"),
        "fifty_two_week_low": record.get("fiftyTwoWeekLow"),
        "turnover_value": record.get("turnoverValue"),
        "turnover_volume": record.get("turnoverVolume"),
        "total_transaction": record.get("totalTransaction"),
        "abs_change": record.get("absChange"),
        "percentage_change": record.get("percentageChange"),
    }
