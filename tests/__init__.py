"""Test suite for NEPSE-Ingest.

Hermetic tests for the ingestion pipeline. Test modules mirror the
nepse_ingest package one to one.

Testing Philosophy:
    - Playwright is mocked; Redis is an in-memory double
    - The durable store runs for real on in-memory SQLite
    - Exchange time comes from an injectable clock, never the wall clock
"""
