import json, logging
from kafka import KafkaProducer
from order_engine.core.config import settings

logger = logging.getLogger(__name__)

_producer = None

def _get_producer() -> KafkaProducer:
    global _producer
    if _producer is None:
        _producer = KafkaProducer(
            bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
            linger_ms=10,
            retries=5,
        )
    return _producer

def send(topic: str, key: str, value: dict):
    p = _get_producer()
    p.send(topic, key=key, value=value)
    p.flush(5)

def emit(event: dict):
    """Emit to order.events (configurable). Broker trouble is logged, never raised."""
    if not settings.EVENTS_ENABLED:
        return
    try:
        send(settings.TOPIC_ORDER_EVENTS, key=str(event.get("order_id", "")), value=event)
    except Exception:
        logger.exception("failed to publish %s for order %s", event.get("type"), event.get("order_id"))
