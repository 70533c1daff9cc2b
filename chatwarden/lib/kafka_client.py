"""
Kafka ingestion for platform events.
Chat messages and administrative events arrive keyed by tenant, so one tenant's
events stay ordered within a partition.
"""
import os
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from kafka import KafkaConsumer, KafkaProducer
from kafka.errors import KafkaError

logger = logging.getLogger(__name__)


MESSAGES_TOPIC = os.getenv('CHATWARDEN_MESSAGES_TOPIC', 'chat-messages')
ADMIN_EVENTS_TOPIC = os.getenv('CHATWARDEN_ADMIN_EVENTS_TOPIC', 'admin-events')
DLQ_TOPIC = os.getenv('CHATWARDEN_DLQ_TOPIC', 'dlq-events')

EventHandler = Callable[[Dict[str, Any]], None]


def _encode(value: Dict[str, Any]) -> bytes:
    return json.dumps(value, default=str).encode('utf-8')


def _decode(raw: bytes) -> Optional[Dict[str, Any]]:
    # Undecodable records are dead-lettered by the consume loop, not raised here
    try:
        value = json.loads(raw.decode('utf-8'))
    except (UnicodeDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


class MessageBroker:
    """
    Event ingestion over Kafka.
    Offsets are committed only after the handler returns or the record is dead-lettered.
    """

    def __init__(self, bootstrap_servers: Optional[str] = None):
        self.bootstrap_servers = bootstrap_servers or os.getenv('KAFKA_BOOTSTRAP_SERVERS', 'localhost:9092')
        self.consumers: List[KafkaConsumer] = []
        self._stopping = threading.Event()
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=_encode,
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',
                retries=3,
                max_in_flight_requests_per_connection=1,
            )
        except KafkaError as e:
            logger.error(f"Could not connect producer to {self.bootstrap_servers}: {e}")
            raise
        logger.info(f"Kafka producer connected to {self.bootstrap_servers}")

    def publish(self, topic: str, value: Dict[str, Any], key: Optional[str] = None) -> bool:
        """Send one record and wait for the broker acknowledgement."""
        try:
            metadata = self.producer.send(topic, value=value, key=key).get(timeout=10)
        except KafkaError as e:
            logger.error(f"Publish to {topic} failed: {e}")
            return False
        logger.debug(f"Published to {topic}[{metadata.partition}]@{metadata.offset}")
        return True

    def publish_message(self, message: Dict[str, Any]) -> bool:
        """Publish a chat message for the content engine."""
        return self.publish(MESSAGES_TOPIC, message, key=message.get('tenant_id'))

    def publish_admin_event(self, event: Dict[str, Any]) -> bool:
        """Publish an administrative event for the abuse-rate detector."""
        return self.publish(ADMIN_EVENTS_TOPIC, event, key=event.get('tenant_id'))

    def publish_dlq(self, record, error: str) -> bool:
        """Dead-letter a record that could not be processed, with where it came from."""
        payload = {
            'source_topic': record.topic,
            'partition': record.partition,
            'offset': record.offset,
            'key': record.key.decode('utf-8', 'replace') if record.key else None,
            'raw_value': record.value.decode('utf-8', 'replace') if record.value else None,
            'error': error,
            'failed_at': time.time(),
        }
        return self.publish(DLQ_TOPIC, payload, key=payload['key'])

    def consume(self, topic: str, group_id: str, handler: EventHandler, auto_offset_reset: str = 'earliest'):
        """Feed every record of `topic` to `handler` until stop() is called (blocks)."""
        consumer = KafkaConsumer(
            topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=group_id,
            auto_offset_reset=auto_offset_reset,
            enable_auto_commit=False,
        )
        self.consumers.append(consumer)
        logger.info(f"Consuming {topic} as {group_id}")

        while not self._stopping.is_set():
            batches = consumer.poll(timeout_ms=1000)
            for records in batches.values():
                for record in records:
                    self._dispatch(record, handler)
            if batches:
                consumer.commit()
        consumer.close()
        logger.info(f"Stopped consuming {topic}")

    def _dispatch(self, record, handler: EventHandler):
        value = _decode(record.value)
        if value is None:
            logger.error(f"Undecodable record at {record.topic}[{record.partition}]@{record.offset}")
            self.publish_dlq(record, "record is not a JSON object")
            return
        try:
            handler(value)
        except Exception as e:
            logger.error(f"Handler failed for {record.topic}[{record.partition}]@{record.offset}: {e}")
            self.publish_dlq(record, str(e))

    def consume_messages(self, handler: EventHandler):
        """Consume chat messages."""
        self.consume(MESSAGES_TOPIC, 'chatwarden-content', handler)

    def consume_admin_events(self, handler: EventHandler):
        """Consume administrative events."""
        self.consume(ADMIN_EVENTS_TOPIC, 'chatwarden-antinuke', handler)

    def stop(self):
        """Ask every consume loop to finish its current poll and exit."""
        self._stopping.set()

    def close(self):
        self.stop()
        self.producer.flush()
        self.producer.close()
        logger.info("Kafka producer closed")
