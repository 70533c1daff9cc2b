"""
Prometheus instrumentation for the moderation and anti-nuke paths.
"""
import os
import logging
import time
from functools import wraps

from prometheus_client import Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

messages_evaluated = Counter('chatwarden_messages_evaluated_total', 'Messages evaluated', ['action', 'source'])
classifier_fallbacks = Counter('chatwarden_classifier_fallbacks_total', 'Classifier failures recovered locally', ['reason'])
security_events = Counter('chatwarden_security_events_total', 'Administrative actions audited', ['event_type', 'escalated'])
enforcement_failures = Counter('chatwarden_enforcement_failures_total', 'Platform calls that failed', ['tier'])
persistence_failures = Counter('chatwarden_persistence_failures_total', 'Audit or state writes that failed', ['operation'])

evaluation_latency = Histogram('chatwarden_evaluation_duration_seconds', 'Event handling duration', ['path'])
classifier_latency = Histogram('chatwarden_classifier_duration_seconds', 'External classifier call duration')

active_lockdowns = Gauge('chatwarden_active_lockdowns', 'Tenants currently locked down')


class MetricsExporter:
    """Exposes the engine's counters over HTTP and offers recording helpers"""

    def __init__(self, port: int = 8000):
        self.port = port
        self.server_started = False

    def start(self):
        """Serve /metrics; calling twice is a no-op"""
        if self.server_started:
            return
        start_http_server(self.port)
        self.server_started = True
        logger.info(f"Serving metrics on :{self.port}")

    @staticmethod
    def track_latency(path: str):
        """Observe how long an async handler takes; failures land under `<path>_error`"""
        def decorator(func):
            @wraps(func)
            async def wrapper(*args, **kwargs):
                label = f"{path}_error"
                started = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                    label = path
                    return result
                finally:
                    evaluation_latency.labels(path=label).observe(time.perf_counter() - started)
            return wrapper
        return decorator

    @staticmethod
    def record_message(action: str, source: str):
        """Record a message decision"""
        messages_evaluated.labels(action=action, source=source).inc()

    @staticmethod
    def record_classifier_latency(duration: float):
        """Record external classifier latency"""
        classifier_latency.observe(duration)

    @staticmethod
    def record_fallback(reason: str):
        """Record a classifier fallback"""
        classifier_fallbacks.labels(reason=reason).inc()

    @staticmethod
    def record_security_event(event_type: str, escalated: bool):
        """Record an audited administrative action"""
        security_events.labels(event_type=event_type, escalated=str(escalated).lower()).inc()

    @staticmethod
    def record_enforcement_failure(tier: str):
        """Record a failed platform call"""
        enforcement_failures.labels(tier=tier).inc()

    @staticmethod
    def record_persistence_failure(operation: str):
        """Record a failed store write"""
        persistence_failures.labels(operation=operation).inc()

    @staticmethod
    def set_lockdowns(count: int):
        """Update active lockdown gauge"""
        active_lockdowns.set(count)



metrics = MetricsExporter(port=int(os.getenv('METRICS_PORT', '8000')))
