import json
import logging
import socket
from datetime import datetime, timezone
from typing import Any, Optional

from confluent_kafka import KafkaError, KafkaException, Producer

from services.reflection_engine.models import StoredRecord

logger = logging.getLogger(__name__)

EVENT_TYPE_COMPLETED = "reflection_completed"

# Global Kafka Producer instance
_producer_instance: Optional[Producer] = None


def _get_kafka_config(bootstrap_servers: str) -> dict:
    """Builds the Kafka configuration dictionary."""
    config = {
        'bootstrap.servers': bootstrap_servers,
        'client.id': socket.gethostname(),
        'retries': 5,
        'message.timeout.ms': 10000,
    }
    logger.info(f"Kafka Producer config: {config}")
    return config


def _delivery_report(err: Optional[KafkaError], msg):
    """Callback function for Kafka message delivery reports."""
    if err is not None:
        logger.error(f"Message delivery failed: {err}")
    else:
        logger.debug(
            f"Message delivered to {msg.topic()} [{msg.partition()}] @ offset {msg.offset()}"
        )


def get_producer(bootstrap_servers: Optional[str]) -> Optional[Producer]:
    """Initializes and returns the shared Producer, or None when Kafka is not configured."""
    global _producer_instance
    if not bootstrap_servers:
        return None
    if _producer_instance is None:
        try:
            _producer_instance = Producer(_get_kafka_config(bootstrap_servers))
            logger.info("Confluent Kafka Producer initialized.")
        except KafkaException as e:
            logger.error(f"Failed to initialize Confluent Kafka Producer: {e}")
            _producer_instance = None
    return _producer_instance


def flush_producer(timeout: float = 10.0):
    """Flushes the producer queue, ensuring queued completion events are sent."""
    if _producer_instance is None:
        return
    remaining = _producer_instance.flush(timeout)
    if remaining > 0:
        logger.warning(f"Producer flush timed out, {remaining} messages still in queue.")
    else:
        logger.info("Producer flushed successfully.")


class KafkaCompletionPublisher:
    """
    Emits a `reflection_completed` event once a record is stored.
    Delivery is best-effort: failures are logged, never raised.
    """

    def __init__(self, producer: Any, topic: str):
        self.producer = producer
        self.topic = topic

    def build_event(self, record: StoredRecord) -> dict:
        return {
            "event_type": EVENT_TYPE_COMPLETED,
            "record_id": record.record_id,
            "user_id": record.user_id,
            "template_id": record.template_id,
            "completed_at": record.completed_at.isoformat(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def publish_completed(self, record: StoredRecord) -> None:
        event = self.build_event(record)
        try:
            self.producer.produce(
                self.topic,
                value=json.dumps(event).encode('utf-8'),
                key=record.user_id.encode('utf-8'),
                callback=_delivery_report,
            )
            # Serves already-queued callbacks without blocking
            self.producer.poll(0)
            logger.info(f"Completion event queued for record {record.record_id} on '{self.topic}'")
        except BufferError:
            # Never block the event loop waiting for room; serve callbacks and drop.
            logger.error(f"Kafka producer queue is full for topic '{self.topic}'; dropping event for {record.record_id}")
            self.producer.poll(0)
        except KafkaException as e:
            logger.error(f"Error producing completion event to '{self.topic}': {e}")
