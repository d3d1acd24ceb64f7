"""
Per-vendor push channel over Kafka.

Each subscribed vendor maps to one topic (``<prefix>.<vendor_id>``) so events
for a vendor arrive in send order; nothing is assumed across vendors. The
consumer is polled on a daemon thread and every message value is handed to
``on_message``. Connection failures are retried with exponential backoff;
while disconnected, predictions simply rely on cache TTLs.
"""
import logging
import threading
import uuid
from typing import Callable

from confluent_kafka import Consumer, KafkaError

from campus_eta.common.config import (
    KAFKA_BOOTSTRAP_SERVERS,
    LIVE_MAX_BACKOFF_S,
    LIVE_TOPIC_PREFIX,
)
from campus_eta.prediction_api.errors import SubscriptionError
from campus_eta.prediction_api.monitoring.metrics import LIVE_SUBSCRIPTIONS

logger = logging.getLogger(__name__)

INITIAL_BACKOFF_S = 1.0
POLL_TIMEOUT_S = 0.5


def build_consumer_config(bootstrap_servers: str, group_id: str) -> dict:
    return {
        "bootstrap.servers": bootstrap_servers,
        "group.id": group_id,
        "auto.offset.reset": "latest",
        "enable.auto.commit": True,
        "session.timeout.ms": 30000,
        "heartbeat.interval.ms": 10000,
        "topic.metadata.refresh.interval.ms": 5000,
    }


class LiveUpdateChannel:

    def __init__(
        self,
        on_message: Callable[[bytes], None],
        bootstrap_servers: str = KAFKA_BOOTSTRAP_SERVERS,
        topic_prefix: str = LIVE_TOPIC_PREFIX,
        consumer_factory: Callable[[dict], Consumer] = Consumer,
        max_backoff: float = LIVE_MAX_BACKOFF_S,
        poll_timeout: float = POLL_TIMEOUT_S,
        group_id: str | None = None,
    ):
        self.on_message = on_message
        self.topic_prefix = topic_prefix
        self.max_backoff = max_backoff
        self.poll_timeout = poll_timeout
        self._consumer_factory = consumer_factory
        # Every engine process needs every event, so each gets its own group.
        self._config = build_consumer_config(
            bootstrap_servers, group_id or f"prediction-api-{uuid.uuid4().hex[:8]}"
        )

        self._consumer: Consumer | None = None
        self._vendors: set[str] = set()
        self._topics_dirty = False
        self._lock = threading.Lock()
        self._backoff = INITIAL_BACKOFF_S
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def connected(self) -> bool:
        return self._consumer is not None

    @property
    def backoff(self) -> float:
        return self._backoff

    def topic_for(self, vendor_id: str) -> str:
        return f"{self.topic_prefix}.{vendor_id}"

    def subscriptions(self) -> set[str]:
        with self._lock:
            return set(self._vendors)

    def subscribe(self, vendor_id: str) -> None:
        with self._lock:
            if vendor_id in self._vendors:
                return
            self._vendors.add(vendor_id)
            self._topics_dirty = True
            LIVE_SUBSCRIPTIONS.set(len(self._vendors))
        logger.info(f"Subscribed to live updates for vendor {vendor_id}")

    def unsubscribe(self, vendor_id: str) -> None:
        with self._lock:
            if vendor_id not in self._vendors:
                return
            self._vendors.discard(vendor_id)
            self._topics_dirty = True
            LIVE_SUBSCRIPTIONS.set(len(self._vendors))
        logger.info(f"Unsubscribed from live updates for vendor {vendor_id}")

    def _connect(self) -> Consumer:
        try:
            consumer = self._consumer_factory(self._config)
            consumer.list_topics(timeout=5)
            return consumer
        except Exception as e:
            raise SubscriptionError(f"Cannot connect to Kafka: {e}") from e

    def _sync_topics(self) -> None:
        with self._lock:
            if not self._topics_dirty:
                return
            topics = sorted(self.topic_for(v) for v in self._vendors)
            self._topics_dirty = False

        if topics:
            self._consumer.subscribe(topics)
        else:
            self._consumer.unsubscribe()

    def _next_backoff(self) -> float:
        delay = self._backoff
        self._backoff = min(self._backoff * 2, self.max_backoff)
        return delay

    def step(self) -> float:
        """
        Run one connect/poll iteration.

        A failing consumer is closed and reconnected after the same backoff
        as a failed connect.

        Returns:
            Seconds to wait before the next iteration (0 when healthy)
        """
        try:
            return self._poll_once()
        except SubscriptionError as e:
            delay = self._next_backoff()
            logger.error(f"{e}; retrying in {delay:.0f}s")
            return delay
        except Exception:
            delay = self._next_backoff()
            logger.exception(f"Live channel consumer failed; reconnecting in {delay:.0f}s")
            self._reset()
            return delay

    def _poll_once(self) -> float:
        if self._consumer is None:
            self._consumer = self._connect()
            logger.info(f"Live channel connected to {self._config['bootstrap.servers']}")
            self._backoff = INITIAL_BACKOFF_S
            with self._lock:
                self._topics_dirty = True

        self._sync_topics()
        if not self.subscriptions():
            return self.poll_timeout

        msg = self._consumer.poll(self.poll_timeout)
        if msg is None:
            return 0.0

        if msg.error():
            code = msg.error().code()
            if code == KafkaError._PARTITION_EOF:
                pass
            elif code == KafkaError.UNKNOWN_TOPIC_OR_PART:
                logger.warning(f"Live topic not available yet: {msg.error()}")
            else:
                logger.error(f"Live channel consumer error: {msg.error()}")
                if msg.error().fatal():
                    self._reset()
            return 0.0

        self.on_message(msg.value())
        return 0.0

    def _reset(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            try:
                consumer.close()
            except Exception as e:
                logger.warning(f"Error closing live consumer: {e}")

    def _run(self) -> None:
        while not self._stop.is_set():
            delay = self.step()
            if delay:
                self._stop.wait(delay)
        self._reset()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="live-update-channel", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
