"""Utility modules for the alert monitor."""
from utils.logger import setup_logging
from utils.formatters import format_timestamp, format_duration, format_confidence, time_ago
from utils.rate_limiter import RateLimiter
from utils.http_client import HTTPClient, APIError
from utils.locks import KeyedLock
