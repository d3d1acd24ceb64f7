import threading

from confluent_kafka import KafkaError

from campus_eta.prediction_api.live.channel import LiveUpdateChannel
from tests.fakes import FakeConsumer, FakeKafkaError, FakeMessage


def make_channel(consumer_factory, received=None, **kwargs):
    received = received if received is not None else []
    return LiveUpdateChannel(
        on_message=received.append,
        bootstrap_servers="kafka:9092",
        topic_prefix="predictions",
        consumer_factory=consumer_factory,
        poll_timeout=0.01,
        group_id="test",
        **kwargs,
    )


def test_topic_per_vendor():
    channel = make_channel(lambda config: FakeConsumer())

    assert channel.topic_for("VEN001") == "predictions.VEN001"


def test_messages_are_handed_to_callback():
    consumer = FakeConsumer([FakeMessage(b"one"), FakeMessage(b"two")])
    received = []
    channel = make_channel(lambda config: consumer, received)
    channel.subscribe("VEN002")
    channel.subscribe("VEN001")

    for _ in range(3):
        channel.step()

    assert received == [b"one", b"two"]
    assert consumer.subscribed == [["predictions.VEN001", "predictions.VEN002"]]


def test_unsubscribe_resyncs_topics():
    consumer = FakeConsumer()
    channel = make_channel(lambda config: consumer)
    channel.subscribe("VEN001")
    channel.step()

    channel.unsubscribe("VEN001")
    delay = channel.step()

    assert consumer.unsubscribed == 1
    assert delay == channel.poll_timeout


def test_connect_failures_back_off_exponentially():
    def refuse(config):
        raise RuntimeError("broker down")

    channel = make_channel(refuse, max_backoff=5)
    channel.subscribe("VEN001")

    delays = [channel.step() for _ in range(5)]

    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert not channel.connected


def test_backoff_resets_after_connect():
    attempts = []

    def flaky(config):
        attempts.append(config)
        if len(attempts) < 3:
            raise RuntimeError("broker down")
        return FakeConsumer()

    channel = make_channel(flaky)
    channel.subscribe("VEN001")

    channel.step()
    channel.step()
    assert channel.step() == 0.0
    assert channel.connected
    assert channel.backoff == 1.0
    assert attempts[0]["group.id"] == "test"


def test_non_fatal_errors_keep_consumer():
    consumer = FakeConsumer([
        FakeMessage(error=FakeKafkaError(KafkaError._PARTITION_EOF)),
        FakeMessage(error=FakeKafkaError(KafkaError.UNKNOWN_TOPIC_OR_PART)),
    ])
    received = []
    channel = make_channel(lambda config: consumer, received)
    channel.subscribe("VEN001")

    channel.step()
    channel.step()

    assert received == []
    assert channel.connected


def test_fatal_error_reconnects():
    consumers = [
        FakeConsumer([FakeMessage(error=FakeKafkaError(KafkaError._FATAL, fatal=True))]),
        FakeConsumer([FakeMessage(b"after")]),
    ]
    first = consumers[0]
    received = []
    channel = make_channel(lambda config: consumers.pop(0), received)
    channel.subscribe("VEN001")

    channel.step()
    assert first.closed
    assert not channel.connected

    channel.step()
    assert received == [b"after"]


def test_start_and_stop_thread():
    channel = make_channel(lambda config: FakeConsumer())

    channel.start()
    channel.stop(timeout=2)

    assert not channel.connected


class BrokenConsumer(FakeConsumer):
    def poll(self, timeout=None):
        raise RuntimeError("consumer closed")


def test_consumer_failure_reconnects_with_backoff():
    broken = BrokenConsumer()
    consumers = [broken, FakeConsumer([FakeMessage(b"after")])]
    received = []
    channel = make_channel(lambda config: consumers.pop(0), received)
    channel.subscribe("VEN001")

    assert channel.step() == 1.0
    assert broken.closed
    assert not channel.connected

    assert channel.step() == 0.0
    assert received == [b"after"]
    assert channel.backoff == 1.0


def test_polling_thread_survives_consumer_failure():
    delivered = threading.Event()
    consumers = [BrokenConsumer(), FakeConsumer([FakeMessage(b"after")])]
    channel = LiveUpdateChannel(
        on_message=lambda raw: delivered.set(),
        consumer_factory=lambda config: consumers.pop(0) if consumers else FakeConsumer(),
        poll_timeout=0.01,
        group_id="test",
    )
    channel.subscribe("VEN001")

    channel.start()
    try:
        assert delivered.wait(timeout=3)
    finally:
        channel.stop(timeout=2)
