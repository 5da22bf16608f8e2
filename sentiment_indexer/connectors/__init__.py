# Sentiment Indexer Source Connectors
# HTTP clients for KRX, BOK ECOS and DART
"""
Source connectors for daily market and disclosure data.

Each client:
- Builds the source-specific HTTP request for a dataset and date
- Parses the source payload into SourceRecords
- Waits on a token bucket before every call
- Fails fast while its circuit breaker is open
- Retries transient failures with exponential backoff
- Tracks telemetry (requests, failures, records written)
"""

from .base import BaseSourceClient, FetchResult, RetryPolicy, SourceClientConfig
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .rate_limit import RateLimitConfig, RateLimitMode, TokenBucket
from .krx import KrxClient
from .bok import BokClient
from .dart import DartClient

__all__ = [
    "BaseSourceClient",
    "FetchResult",
    "RetryPolicy",
    "SourceClientConfig",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "RateLimitConfig",
    "RateLimitMode",
    "TokenBucket",
    "KrxClient",
    "BokClient",
    "DartClient",
]
