"""Collects alert notifications into batches and publishes them."""

from __future__ import annotations

import abc
import dataclasses
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from .batch import AlertBatch, NotifyRequest, decode_hex_uint64
from .metrics import MetricsAggregator
from .models import AgentConfig

log = logging.getLogger(__name__)

DEFAULT_INTERVAL = 15.0
DEFAULT_BATCH_LIMIT = 500
DEFAULT_BATCH_BUFFER_SIZE = 100
DEFAULT_METRICS_BUCKET_INTERVAL = 60.0

FAST_REPORT_INTERVAL = 60.0
SLOW_REPORT_INTERVAL = 15 * 60.0

_NO_ALERTS = "because there are no alerts"


@dataclass
class PublisherConfig:
    """Settings of the publisher."""

    chain_id: int = 1
    always_publish: bool = False
    skip_empty: bool = False
    skip_publish: bool = False
    batch_interval: float = DEFAULT_INTERVAL
    batch_limit: int = DEFAULT_BATCH_LIMIT
    metrics_bucket_interval: float = DEFAULT_METRICS_BUCKET_INTERVAL
    local_mode: bool = False
    local_mode_include_metrics: bool = False
    scanner_version: Any = None


class BatchSender(abc.ABC):
    """Destination of the published alert batches."""

    @abc.abstractmethod
    def send(self, batch: AlertBatch) -> None:
        """Deliver the batch; raise on failure."""


@dataclass
class _Trackers:
    last_batch_publish: float | None = None
    last_batch_publish_attempt: float | None = None
    last_batch_skip: float | None = None
    last_batch_skip_reason: str = ""
    last_batch_publish_error: BaseException | None = None
    last_metrics_flush: float | None = None


class Publisher:
    """Receives notifications, builds alert batches and publishes them."""

    def __init__(
        self,
        config: PublisherConfig,
        sender: BatchSender,
        aggregator: MetricsAggregator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.sender = sender
        self.aggregator = aggregator or MetricsAggregator(config.metrics_bucket_interval)
        self._clock = clock
        self._notifications: queue.Queue[NotifyRequest] = queue.Queue(maxsize=DEFAULT_BATCH_LIMIT)
        self._batches: queue.Queue[AlertBatch | None] = queue.Queue(maxsize=DEFAULT_BATCH_BUFFER_SIZE)
        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []

        self.trackers = _Trackers()
        self.last_batch_ready = 0.0
        self.last_batch_send_attempt = 0.0
        self.bot_configs: list[AgentConfig] = []
        self.latest_block_input = 0
        self.latest_inspection_results: Any = None

    def notify(self, req: NotifyRequest) -> None:
        """Queue a notification for the next batch."""
        self._notifications.put(req)

    def prepare_batch(self, timeout: float | None = None) -> AlertBatch:
        """Collect notifications until the alert limit is reached or the timeout passes."""
        wait = self.config.batch_interval if timeout is None else timeout
        deadline = time.monotonic() + wait
        batch = AlertBatch(chain_id=self.config.chain_id)
        alerts = 0
        while alerts < self.config.batch_limit:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                notif = self._notifications.get(timeout=remaining)
            except queue.Empty:
                break
            signed = notif.signed_alert
            has_alert = signed is not None
            if has_alert:
                # empty notifications do not count towards the batch limit
                alerts += 1
            try:
                block_num = self._notification_block_number(notif)
            except ValueError as exc:
                log.error("failed to parse alert notif block number: %s", exc)
                continue
            if batch.block_start == 0 or block_num < batch.block_start:
                batch.block_start = block_num
            if batch.block_end == 0 or block_num > batch.block_end:
                batch.block_end = block_num
            if has_alert and signed.alert is not None and signed.alert.finding is not None:
                batch.max_severity = max(batch.max_severity, signed.alert.finding.severity)
            batch.append_alert(notif)

        with self._lock:
            self.last_batch_ready = self._clock()
        return batch

    @staticmethod
    def _notification_block_number(notif: NotifyRequest) -> int:
        if notif.block_event is not None:
            return decode_hex_uint64(notif.block_event.block_number)
        if notif.tx_event is not None:
            return decode_hex_uint64(notif.tx_event.block_number)
        if notif.alert_event is not None:
            return notif.alert_event.block_number
        return decode_hex_uint64("")

    def publish_batch(self, batch: AlertBatch) -> bool:
        """Complete and send the batch; return whether it was published.

        Errors from the sender are recorded and raised again.
        """
        self.trackers.last_batch_publish_attempt = self._clock()
        try:
            published = self._publish(batch)
        except Exception as exc:
            self.trackers.last_batch_publish_error = exc
            raise
        self.trackers.last_batch_publish_error = None
        if published:
            self.trackers.last_batch_publish = self._clock()
        return published

    def _publish(self, batch: AlertBatch) -> bool:
        # flush only when publishing, to make the best use of aggregated metrics
        _, skip = self.should_skip_publishing(batch)
        if not skip:
            batch.metrics, flushed = self.aggregator.try_flush()
            if flushed:
                log.debug("flushed metrics")
                self.trackers.last_metrics_flush = self._clock()
            else:
                log.debug("not flushing metrics yet")

        with self._lock:
            batch.inspection_results = self.latest_inspection_results
            batch.latest_block_input = self.latest_block_input
        if self.config.scanner_version is not None:
            batch.scanner_version = self.config.scanner_version
        if batch.latest_block_input == 0:
            batch.latest_block_input = batch.block_end

        if self.config.skip_publish:
            self._record_skip("skipping batch, because skipPublish is enabled")
            return False

        reason, skip = self.should_skip_publishing(batch)
        if skip:
            self._record_skip(reason)
            return False

        with self._lock:
            self.last_batch_send_attempt = self.last_batch_ready

        outgoing = batch
        if self.config.local_mode and not self.config.local_mode_include_metrics:
            log.debug("excluding metrics due to local mode config")
            outgoing = dataclasses.replace(batch, metrics=[])
        self.sender.send(outgoing)
        log.info(
            "alert batch sent (blockStart=%d, blockEnd=%d, alertCount=%d, metrics=%d)",
            outgoing.block_start,
            outgoing.block_end,
            outgoing.alert_count,
            len(outgoing.metrics),
        )
        return True

    def _record_skip(self, reason: str) -> None:
        log.info("skipping batch: %s", reason)
        self.trackers.last_batch_skip = self._clock()
        self.trackers.last_batch_skip_reason = reason

    def should_skip_publishing(self, batch: AlertBatch) -> tuple[str, bool]:
        """Return the reason for skipping the batch and whether to skip it."""
        if self.config.always_publish or batch.alert_count > 0:
            return "", False

        with self._lock:
            since_attempt = self._clock() - self.last_batch_send_attempt
            runs_bots = len(self.bot_configs) > 0

        if self.config.local_mode and self.config.local_mode_include_metrics:
            if batch.metrics:
                return "", False
            return f"{_NO_ALERTS} or metrics in local mode", True
        if self.config.local_mode:
            return f"{_NO_ALERTS} and metrics are skipped by default in local mode", True
        if self.config.skip_empty:
            return f"{_NO_ALERTS} and skipEmpty is enabled", True
        if runs_bots:
            if batch.metrics:
                return "", False  # do not sacrifice metrics
            if since_attempt >= FAST_REPORT_INTERVAL:
                return "", False
            return f"{_NO_ALERTS} and metrics and fast report deadline has not exceeded yet", True
        if since_attempt >= SLOW_REPORT_INTERVAL:
            return "", False
        return "because this node runs no bots and slow report deadline has not exceeded yet", True

    def handle_agent_versions_update(self, payload: Sequence[AgentConfig] | None) -> None:
        with self._lock:
            self.bot_configs = list(payload or ())

    def handle_scanner_block(self, latest_block_input: int) -> None:
        """Record the latest block given to the bots; lower numbers are ignored."""
        with self._lock:
            if latest_block_input < self.latest_block_input:
                log.warning(
                    "skipping scanner update (lower than previous): %d < %d",
                    latest_block_input,
                    self.latest_block_input,
                )
                return
            log.info("received scanner update: %d", latest_block_input)
            self.latest_block_input = latest_block_input

    def handle_inspection_results(self, results: Any) -> None:
        with self._lock:
            self.latest_inspection_results = results

    def name(self) -> str:
        return "publisher"

    def _prepare_loop(self) -> None:
        while not self._stopped.is_set():
            batch = self.prepare_batch()
            self._batches.put(batch)

    def _publish_loop(self) -> None:
        while True:
            batch = self._batches.get()
            if batch is None:
                return
            try:
                self.publish_batch(batch)
            except Exception as exc:
                log.error("failed to publish alert batch: %s", exc)

    def start(self) -> None:
        """Prepare and publish batches in the background."""
        self._stopped.clear()
        self._threads = [
            threading.Thread(target=self._prepare_loop, daemon=True),
            threading.Thread(target=self._publish_loop, daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._threads:
            self._batches.put(None)
        self._threads = []