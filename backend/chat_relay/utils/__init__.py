"""
Utility modules for the relay.
Provides timestamps, collaborator call wrappers, rate limiting, telemetry
and HTTP middleware.
"""
from .clock import utcnow, isoformat, parse_timestamp
from .resilience import must_succeed, best_effort
from .rate_limit import TokenBucket, TokenBucketLimiter
from .telemetry import setup_telemetry, metrics_collector, MetricsCollector
from .middleware import RequestIDMiddleware, TimingMiddleware, RateLimitMiddleware

__all__ = [
    # Clock
    'utcnow',
    'isoformat',
    'parse_timestamp',

    # Resilience
    'must_succeed',
    'best_effort',

    # Rate limiting
    'TokenBucket',
    'TokenBucketLimiter',

    # Telemetry
    'setup_telemetry',
    'metrics_collector',
    'MetricsCollector',

    # Middleware
    'RequestIDMiddleware',
    'TimingMiddleware',
    'RateLimitMiddleware',
]
