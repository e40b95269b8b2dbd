import pytest

from nodeservices.batch import (
    AgentInfo,
    Alert,
    AlertBatch,
    AlertEvent,
    BlockEvent,
    Finding,
    NotifyRequest,
    SignedAlert,
    TransactionEvent,
)
from nodeservices.metrics import MetricsAggregator
from nodeservices.models import AgentConfig, AgentMetric, AgentMetrics
from nodeservices.publisher import (
    FAST_REPORT_INTERVAL,
    SLOW_REPORT_INTERVAL,
    BatchSender,
    Publisher,
    PublisherConfig,
)

NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class RecordingSender(BatchSender):
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def send(self, batch):
        if self.error is not None:
            raise self.error
        self.sent.append(batch)


def make_publisher(config=None, sender=None, clock=None):
    clock = clock or FakeClock()
    config = config or PublisherConfig()
    aggregator = MetricsAggregator(60.0, clock=clock)
    return Publisher(config, sender or RecordingSender(), aggregator, clock)


def signed(severity=0, private=False):
    return SignedAlert(alert=Alert(id="alertId", finding=Finding(severity=severity, private=private)))


@pytest.mark.parametrize(
    "name, since, bots, batch, expected_skip, expected_msg",
    [
        ("has alerts", 2, False, AlertBatch(alert_count=2), False, ""),
        (
            "has metrics and running bots",
            2,
            True,
            AlertBatch(metrics=[AgentMetrics(agent_id="", timestamp="")]),
            False,
            "",
        ),
        ("no metrics, running bots, too early", 2, True, AlertBatch(), True, "fast report deadline"),
        ("no metrics, running bots, not early", FAST_REPORT_INTERVAL, True, AlertBatch(), False, ""),
        ("no bots, too early", 2, False, AlertBatch(), True, "slow report deadline"),
        ("no bots, not early", SLOW_REPORT_INTERVAL, False, AlertBatch(), False, ""),
    ],
)
def test_should_skip_publishing(name, since, bots, batch, expected_skip, expected_msg):
    pub = make_publisher()
    pub.last_batch_send_attempt = NOW - since
    if bots:
        pub.handle_agent_versions_update([AgentConfig()])
    msg, skip = pub.should_skip_publishing(batch)
    assert skip is expected_skip
    assert expected_msg in msg


def test_always_publish_never_skips():
    pub = make_publisher(PublisherConfig(always_publish=True, skip_empty=True))
    pub.last_batch_send_attempt = NOW
    assert pub.should_skip_publishing(AlertBatch()) == ("", False)


def test_skip_empty_reason():
    pub = make_publisher(PublisherConfig(skip_empty=True))
    msg, skip = pub.should_skip_publishing(AlertBatch())
    assert skip is True
    assert "skipEmpty" in msg


def test_local_mode_reasons():
    with_metrics = make_publisher(PublisherConfig(local_mode=True, local_mode_include_metrics=True))
    msg, skip = with_metrics.should_skip_publishing(AlertBatch())
    assert skip is True and "local mode" in msg
    batch = AlertBatch(metrics=[AgentMetrics(agent_id="a", timestamp="")])
    assert with_metrics.should_skip_publishing(batch) == ("", False)

    without = make_publisher(PublisherConfig(local_mode=True))
    msg, skip = without.should_skip_publishing(batch)
    assert skip is True and "skipped by default" in msg


def test_prepare_batch_until_limit():
    pub = make_publisher(PublisherConfig(chain_id=137, batch_limit=2))
    agent = AgentInfo(manifest="agentInfo")
    pub.notify(NotifyRequest(agent_info=agent, block_event=BlockEvent(block_number="0x5")))
    pub.notify(NotifyRequest(agent_info=agent, signed_alert=signed(3), tx_event=TransactionEvent(tx_hash="0xaa", block_number="0x10")))
    pub.notify(NotifyRequest(agent_info=agent, signed_alert=signed(1), block_event=BlockEvent(block_number="0x7")))
    batch = pub.prepare_batch(timeout=5)
    assert batch.chain_id == 137
    assert batch.block_start == 5
    assert batch.block_end == 16
    assert batch.alert_count == 2
    assert batch.max_severity == 3
    assert pub.last_batch_ready == NOW


def test_prepare_batch_timeout_gives_empty_batch():
    pub = make_publisher(PublisherConfig(chain_id=5))
    batch = pub.prepare_batch(timeout=0.05)
    assert (batch.chain_id, batch.alert_count, batch.block_start) == (5, 0, 0)


def test_prepare_batch_skips_bad_block_number():
    pub = make_publisher(PublisherConfig(batch_limit=1))
    pub.notify(NotifyRequest(agent_info=AgentInfo(manifest="m"), signed_alert=signed(), block_event=BlockEvent(block_number="zz")))
    batch = pub.prepare_batch(timeout=0.05)
    assert batch.alert_count == 0
    assert batch.results == []


def test_prepare_batch_combination_alert():
    pub = make_publisher(PublisherConfig(batch_limit=1))
    event = AlertEvent(alert_hash="0x1", source_bot_id="0xbot", block_number=42)
    pub.notify(NotifyRequest(agent_info=AgentInfo(manifest="m"), signed_alert=signed(), alert_event=event))
    batch = pub.prepare_batch(timeout=1)
    assert batch.block_start == 42 and batch.block_end == 42
    assert batch.combination_alerts[0].results[0].alerts[0].alert.id == "alertId"


def test_publish_batch_sends_and_fills_fields():
    sender = RecordingSender()
    pub = make_publisher(PublisherConfig(scanner_version="v1"), sender)
    pub.handle_inspection_results({"ok": True})
    batch = AlertBatch(alert_count=1, block_start=3, block_end=9)
    assert pub.publish_batch(batch) is True
    sent = sender.sent[0]
    assert sent.latest_block_input == 9
    assert sent.inspection_results == {"ok": True}
    assert sent.scanner_version == "v1"
    assert pub.trackers.last_batch_publish == NOW


def test_scanner_block_input_used_and_lower_ignored():
    sender = RecordingSender()
    pub = make_publisher(sender=sender)
    pub.handle_scanner_block(100)
    pub.handle_scanner_block(50)
    assert pub.latest_block_input == 100
    pub.publish_batch(AlertBatch(alert_count=1, block_end=9))
    assert sender.sent[0].latest_block_input == 100


def test_skip_publish_does_not_send():
    sender = RecordingSender()
    pub = make_publisher(PublisherConfig(skip_publish=True), sender)
    assert pub.publish_batch(AlertBatch(alert_count=1)) is False
    assert sender.sent == []
    assert "skipPublish" in pub.trackers.last_batch_skip_reason


def test_skipped_batch_records_reason():
    sender = RecordingSender()
    pub = make_publisher(PublisherConfig(skip_empty=True), sender)
    assert pub.publish_batch(AlertBatch()) is False
    assert sender.sent == []
    assert "skipEmpty" in pub.trackers.last_batch_skip_reason


def test_send_attempt_time_follows_batch_ready():
    clock = FakeClock()
    pub = make_publisher(clock=clock)
    pub.prepare_batch(timeout=0.01)
    clock.now = NOW + 30
    pub.publish_batch(AlertBatch(alert_count=1))
    assert pub.last_batch_send_attempt == NOW


def test_sender_error_is_raised_and_recorded():
    error = RuntimeError("send failed")
    pub = make_publisher(sender=RecordingSender(error=error))
    with pytest.raises(RuntimeError, match="send failed"):
        pub.publish_batch(AlertBatch(alert_count=1))
    assert pub.trackers.last_batch_publish_error is error
    assert pub.trackers.last_batch_publish is None


def test_metrics_flushed_into_published_batch():
    clock = FakeClock()
    sender = RecordingSender()
    pub = make_publisher(sender=sender, clock=clock)
    pub.aggregator.add_agent_metrics([AgentMetric("agent", "2023-01-01T00:00:00Z", "m", 4)])
    clock.now = NOW + 120
    pub.publish_batch(AlertBatch(alert_count=1))
    metrics = sender.sent[0].metrics
    assert len(metrics) == 1
    assert metrics[0].metrics[0].sum == 4.0
    assert pub.trackers.last_metrics_flush == NOW + 120


def test_local_mode_excludes_metrics():
    clock = FakeClock()
    sender = RecordingSender()
    pub = make_publisher(PublisherConfig(local_mode=True), sender, clock)
    pub.aggregator.add_agent_metrics([AgentMetric("agent", "2023-01-01T00:00:00Z", "m", 1)])
    clock.now = NOW + 120
    batch = AlertBatch(alert_count=1)
    assert pub.publish_batch(batch) is True
    assert sender.sent[0].metrics == []
    assert len(batch.metrics) == 1


def test_name():
    assert make_publisher().name() == "publisher"