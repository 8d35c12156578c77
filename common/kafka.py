import json
import logging
from typing import Any, Dict, Optional
from confluent_kafka import Producer, KafkaException
from common.settings import settings

logger = logging.getLogger(__name__)

TOPIC_PAYMENT_EVENTS = "payment_events"
TOPIC_DISPUTE_EVENTS = "dispute_events"

EVENT_TOPICS = {
    "PaymentSucceeded": TOPIC_PAYMENT_EVENTS,
    "PaymentFailed": TOPIC_PAYMENT_EVENTS,
    "PaymentRefunded": TOPIC_PAYMENT_EVENTS,
    "DisputeCreated": TOPIC_DISPUTE_EVENTS,
    "DisputeResolved": TOPIC_DISPUTE_EVENTS,
}

def make_producer(bootstrap: Optional[str] = None) -> Producer:
    return Producer({"bootstrap.servers": bootstrap or settings.kafka_bootstrap, "enable.idempotence": True})

class KafkaNotifier:
    """Fire-and-forget notification dispatcher.

    Delivery problems are logged and dropped; they never reach the caller's
    business transaction.
    """

    def __init__(self, producer: Producer, flush_timeout: float = 2.0):
        self.producer = producer
        self.flush_timeout = flush_timeout

    def notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        topic = EVENT_TOPICS.get(event_type)
        if topic is None:
            logger.warning(f"No topic registered for notification {event_type}")
            return
        message = json.dumps({"type": event_type, **payload}, default=str).encode("utf-8")
        try:
            self.producer.produce(topic, value=message)
            self.producer.flush(self.flush_timeout)
        except (KafkaException, BufferError) as e:
            logger.warning(f"Failed to publish {event_type} notification: {e}")
