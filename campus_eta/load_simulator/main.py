import time
import random
import logging

from dataclasses import dataclass
from confluent_kafka import Producer
from prometheus_client import Counter, Gauge, start_http_server

from campus_eta.common.config import KAFKA_BOOTSTRAP_SERVERS, LIVE_TOPIC_PREFIX
from campus_eta.prediction_api.live.events import EventType, encode_event

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

KAFKA_CONFIG = {"bootstrap.servers": KAFKA_BOOTSTRAP_SERVERS}
METRICS_PORT = 8003

EVENT_INTERVAL = 2.0
SPIKE_PROBABILITY = 0.02
ORDER_ARRIVAL_JITTER = 2

EVENTS_PRODUCED = Counter(
    'load_simulator_events_produced_total',
    'Total number of live events produced',
    ['vendor', 'type']
)

KAFKA_ERRORS = Counter(
    'load_simulator_kafka_errors_total',
    'Total number of Kafka delivery errors',
    ['topic']
)

QUEUE_LENGTH = Gauge(
    'load_simulator_queue_length',
    'Simulated queue length per vendor',
    ['vendor']
)


@dataclass
class Vendor:
    """A campus food vendor with a simulated kitchen"""
    vendor_id: str
    name: str
    stations: int
    avg_prep_minutes: float
    demand_weight: float


CAMPUS_VENDORS = [
    Vendor("VEN001", "Main Cafeteria", stations=6, avg_prep_minutes=8.0, demand_weight=3.0),
    Vendor("VEN002", "Library Coffee Bar", stations=2, avg_prep_minutes=4.0, demand_weight=2.0),
    Vendor("VEN003", "Engineering Food Truck", stations=2, avg_prep_minutes=10.0, demand_weight=1.5),
    Vendor("VEN004", "Student Union Grill", stations=4, avg_prep_minutes=12.0, demand_weight=2.5),
]


class KitchenSimulator:
    def __init__(self, vendors: list[Vendor], seed: int | None = None):
        self.vendors = vendors
        self.rng = random.Random(seed)
        self.queues = {v.vendor_id: 0 for v in vendors}

    def _step_queue(self, vendor: Vendor) -> int:
        arrivals = self.rng.randint(0, int(vendor.demand_weight * ORDER_ARRIVAL_JITTER))
        served = self.rng.randint(0, vendor.stations)
        queue = max(0, self.queues[vendor.vendor_id] + arrivals - served)
        self.queues[vendor.vendor_id] = queue
        return queue

    def load_event(self, vendor: Vendor) -> dict:
        queue = self._step_queue(vendor)
        active = min(queue, vendor.stations)
        utilization = min(1.0, (queue / vendor.stations) if vendor.stations else 1.0)
        wait_time = round(queue / max(vendor.stations, 1) * vendor.avg_prep_minutes, 1)

        return {
            "vendorId": vendor.vendor_id,
            "load": {
                "currentActiveOrders": active,
                "queueLength": queue,
                "capacityUtilization": round(utilization, 3),
                "avgPreparationTime": vendor.avg_prep_minutes,
                "waitTime": wait_time,
            },
        }

    def maybe_spike(self, vendor: Vendor) -> dict | None:
        if self.rng.random() >= SPIKE_PROBABILITY:
            return None
        return {
            "vendorId": vendor.vendor_id,
            "intensity": "high",
            "message": f"Rush at {vendor.name}",
        }

    def generate_events(self) -> list[tuple[Vendor, EventType, dict]]:
        events = []
        for vendor in self.vendors:
            events.append((vendor, EventType.VENDOR_LOAD_UPDATE, self.load_event(vendor)))
            spike = self.maybe_spike(vendor)
            if spike is not None:
                events.append((vendor, EventType.DEMAND_SPIKE_ALERT, spike))
        return events


def get_producer():
    while True:
        try:
            p = Producer(KAFKA_CONFIG)
            p.poll(0)
            logger.info(f"Connected to Kafka at {KAFKA_BOOTSTRAP_SERVERS}")
            return p
        except Exception as e:
            logger.warning(f"Waiting for Kafka... {e}")
            time.sleep(3)


def delivery_report(err, msg):
    if err is not None:
        logger.error(f"Delivery failed: {err}")
        KAFKA_ERRORS.labels(topic=msg.topic()).inc()
    else:
        logger.debug(f"Delivered to {msg.topic()} [{msg.partition()}]")


def main():
    start_http_server(METRICS_PORT)
    logger.info(f"Prometheus metrics server started on port {METRICS_PORT}")

    producer = get_producer()
    simulator = KitchenSimulator(CAMPUS_VENDORS)

    logger.info(f"Simulating {len(CAMPUS_VENDORS)} vendors on topics {LIVE_TOPIC_PREFIX}.<vendor_id>")

    try:
        while True:
            for vendor, event_type, payload in simulator.generate_events():
                producer.produce(
                    topic=f"{LIVE_TOPIC_PREFIX}.{vendor.vendor_id}",
                    key=vendor.vendor_id.encode("utf-8"),
                    value=encode_event(event_type, payload),
                    callback=delivery_report,
                )
                EVENTS_PRODUCED.labels(vendor=vendor.vendor_id, type=event_type.value).inc()
                QUEUE_LENGTH.labels(vendor=vendor.vendor_id).set(simulator.queues[vendor.vendor_id])

            producer.poll(0)
            time.sleep(EVENT_INTERVAL)

    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        producer.flush()
        logger.info("Load simulator stopped")


if __name__ == "__main__":
    main()
