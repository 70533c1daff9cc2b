"""
Engine runner - wires store, platform, classifier, metrics and Kafka consumers together
"""
import os
import asyncio
import importlib
import logging
import threading
import time
from typing import Any, Dict

from chatwarden.lib.config import EngineSettings
from chatwarden.lib.database import DatabaseConnection, InMemoryStore, PostgresStore
from chatwarden.lib.kafka_client import MessageBroker
from chatwarden.lib.metrics import metrics
from chatwarden.lib.platform import PlatformClient
from chatwarden.models.content import MessageContext
from chatwarden.services.moderation_service import ModerationEngine

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


HANDLER_TIMEOUT_SECONDS = 30


def load_platform(path: str) -> PlatformClient:
    """Build the platform adapter named by a 'module:factory' path."""
    module_name, _, attr = path.partition(':')
    if not module_name or not attr:
        raise ValueError(f"CHATWARDEN_PLATFORM must look like 'package.module:factory', got '{path}'")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


class EngineRunner:
    """Runs one engine on a dedicated event loop fed by Kafka consumer threads"""

    def __init__(self):
        self.settings = EngineSettings.from_env()

        if os.getenv('DATABASE_URL') or os.getenv('DB_HOST'):
            db = DatabaseConnection()
            db.ensure_schema()
            self.store = PostgresStore(db)
        else:
            logger.warning("No database configured, state will not survive a restart")
            self.store = InMemoryStore()

        platform_path = os.getenv('CHATWARDEN_PLATFORM')
        if not platform_path:
            raise RuntimeError("CHATWARDEN_PLATFORM is not set; no platform adapter to enforce with")
        self.platform = load_platform(platform_path)

        self.engine = ModerationEngine(self.platform, self.store, self.settings)
        self.broker = MessageBroker()

        self.loop = asyncio.new_event_loop()
        self.loop_thread = threading.Thread(target=self.loop.run_forever, daemon=True)

        # Start metrics server
        metrics.start()
        logger.info("Engine runner initialized")

    def _run(self, coro):
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout=HANDLER_TIMEOUT_SECONDS)

    def handle_message(self, message_data: Dict[str, Any]):
        """Chat message path; errors propagate so the broker dead-letters the record"""
        context = MessageContext.model_validate(message_data)
        outcome = self._run(self.engine.on_message(context))
        if outcome.skipped_reason == "error":
            raise RuntimeError(f"engine failed on message {context.message_id}")

    def handle_admin_event(self, event_data: Dict[str, Any]):
        """Administrative event path"""
        outcome = self._run(self.engine.on_administrative_event(event_data))
        if outcome.skipped_reason in ("error", "malformed"):
            raise RuntimeError(f"engine could not process administrative event: {outcome.skipped_reason}")

    def start(self):
        """Start consuming from Kafka topics"""
        self.loop_thread.start()
        logger.info("Starting engine consumers...")

        consumers = [
            threading.Thread(target=target, args=(handler,), daemon=True)
            for target, handler in (
                (self.broker.consume_messages, self.handle_message),
                (self.broker.consume_admin_events, self.handle_admin_event),
            )
        ]
        for consumer in consumers:
            consumer.start()
        logger.info("Engine consumers started")

        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Shutting down engine...")
            self.broker.stop()
            for consumer in consumers:
                consumer.join(timeout=5)
            self._run(self.engine.close())
            self.loop.call_soon_threadsafe(self.loop.stop)
            self.store.close()
            self.broker.close()


if __name__ == '__main__':
    runner = EngineRunner()
    runner.start()
