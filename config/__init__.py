"""Configuration module for NEPSE-Ingest.

Centralized, environment-driven settings for the browser session, the
extractors, the stores and the scheduler.
"""

from config.settings import GlobalConfig, get_config

__all__ = ["GlobalConfig", "get_config"]
