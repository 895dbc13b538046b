"""NEPSE-Ingest core package.

This package contains the ingestion pipeline for the exchange website:
- browser: single shared Playwright session with request filtering
- extractor: ordered extraction strategies with per-strategy timeouts and retries
- price_scraper, market_scraper, company_scraper, history_scraper: data products
- synchronizer: live cache + durable store reconciliation
- cache, store: Redis and SQLAlchemy adapters
- scheduler, jobs: cadence timers, re-entrancy guard and job registry
- archiver: end-of-day history folding
- exporter: pandas-based file export for the CLI
- logger, exceptions, market_time: ambient infrastructure
"""

__version__ = "1.0.0"
