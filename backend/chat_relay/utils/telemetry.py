"""
Telemetry and monitoring utilities.
"""
import logging
from typing import Any, Dict
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import FastAPI, Response
import time

logger = logging.getLogger(__name__)

# Metrics definitions
request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

relay_events = Counter(
    'relay_events_total',
    'Inbound relay events by outcome',
    ['event', 'outcome']
)

chat_messages = Counter(
    'chat_messages_total',
    'Persisted transcript messages',
    ['sender', 'session_type']
)

escalations = Counter(
    'escalations_total',
    'Escalations to human counselors',
    ['trigger', 'priority']
)

responder_fallbacks = Counter(
    'responder_fallbacks_total',
    'Replies served from the fallback set',
    ['reason']
)

responder_latency = Histogram(
    'responder_latency_seconds',
    'Responder webhook round-trip time'
)

websocket_connections = Gauge(
    'websocket_connections_active',
    'Active WebSocket connections'
)


def setup_telemetry(app: FastAPI) -> None:
    """
    Setup telemetry and monitoring for the application.

    Args:
        app: FastAPI application instance
    """
    logger.info("Setting up telemetry...")

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.middleware("http")
    async def track_requests(request, call_next):
        """Track HTTP request metrics."""
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time

        # Route templates keep label cardinality bounded.
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        request_count.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code
        ).inc()

        request_duration.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        return response

    logger.info("Telemetry setup complete")


def track_event(event: str, outcome: str) -> None:
    relay_events.labels(event=event, outcome=outcome).inc()


def track_chat_message(sender: str, session_type: str) -> None:
    chat_messages.labels(sender=sender, session_type=session_type).inc()


def track_escalation(trigger: str, priority: str = "normal") -> None:
    """Track escalation metrics."""
    escalations.labels(trigger=trigger, priority=priority).inc()


def track_responder_fallback(reason: str) -> None:
    responder_fallbacks.labels(reason=reason).inc()


def track_responder_latency(duration: float) -> None:
    responder_latency.observe(duration)


def update_websocket_connections(count: int) -> None:
    """Update WebSocket connections gauge."""
    websocket_connections.set(count)


class MetricsCollector:
    """Collects process-local counters for the stats endpoint."""

    def __init__(self):
        self.start_time = time.time()
        self.message_count = 0
        self.escalation_count = 0
        self.fallback_count = 0
        self.error_count = 0

    @property
    def uptime(self) -> float:
        return time.time() - self.start_time

    def record_message(self, sender: str, session_type: str) -> None:
        self.message_count += 1
        track_chat_message(sender, session_type)

    def record_escalation(self, trigger: str, priority: str) -> None:
        self.escalation_count += 1
        track_escalation(trigger, priority)

    def record_fallback(self, reason: str) -> None:
        self.fallback_count += 1
        track_responder_fallback(reason)

    def record_error(self) -> None:
        self.error_count += 1

    def get_stats(self) -> Dict[str, Any]:
        """Get current statistics."""
        uptime = self.uptime

        return {
            "uptime_seconds": uptime,
            "messages_processed": self.message_count,
            "escalations": self.escalation_count,
            "responder_fallbacks": self.fallback_count,
            "errors": self.error_count,
            "messages_per_minute": (self.message_count / uptime) * 60 if uptime > 0 else 0
        }


# Global metrics collector
metrics_collector = MetricsCollector()
