"""A bot in the agent pool: buffers evaluation requests and processes them."""

from __future__ import annotations

import abc
import logging
import queue
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .batch import AlertEvent, BlockEvent, Finding, TransactionEvent, decode_hex_uint64
from .error_counter import ErrorCounter
from .models import (
    AgentConfig,
    AgentMetric,
    AlertConfig,
    BlockResult,
    CombinationAlertResult,
    MessageClient,
    Subject,
    TxResult,
)

log = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 2000
AGENT_TIMEOUT = 30.0
MAX_FINDINGS = 10
DEFAULT_AGENT_INITIALIZE_TIMEOUT = 300.0

METHOD_EVALUATE_TX = "/network.forta.Agent/EvaluateTx"
METHOD_EVALUATE_BLOCK = "/network.forta.Agent/EvaluateBlock"
METHOD_EVALUATE_ALERT = "/network.forta.Agent/EvaluateAlert"

METRIC_FINDINGS_DROPPED = "agent.finding.drop"
METRIC_STOP = "agent.stop"

JSON_RPC_PROXY_HOST = "forta-json-rpc"

_POLL_INTERVAL = 0.05
_KECCAK256 = re.compile(r"^0x[a-f0-9]{64}$")
_BOT_ID = re.compile(r"^0x[a-fA-F0-9]{64}$")
_HEX_ADDRESS = re.compile(r"^(0[xX])?[0-9a-fA-F]{40}$")

# Errors that count towards shutting an agent down; none do at present.
_CRITICAL_ERRORS: tuple[type[BaseException], ...] = ()


class AgentClosed(Exception):
    """The agent was closed and accepts no more requests."""


@dataclass
class EvaluateTxRequest:
    """Asks a bot to evaluate a transaction."""

    event: TransactionEvent
    request_id: str = ""


@dataclass
class EvaluateBlockRequest:
    """Asks a bot to evaluate a block."""

    event: BlockEvent
    request_id: str = ""


@dataclass
class EvaluateAlertRequest:
    """Asks a combiner bot to evaluate an alert it subscribed to."""

    event: AlertEvent
    request_id: str = ""


@dataclass
class EvaluateResponse:
    """A bot's answer to an evaluation request."""

    findings: list[Finding] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    private: bool = False
    timestamp: str = ""
    latency_ms: int = 0


@dataclass
class InitializeRequest:
    """Sent to a bot once before it receives requests."""

    agent_id: str
    proxy_host: str


@dataclass
class InitializeResponse:
    """A bot's answer to initialization."""

    alert_config: AlertConfig | None = None


@dataclass
class TrackingTimestamps:
    """When a request was sent to the bot and when it answered."""

    bot_request: datetime
    bot_response: datetime


class AgentClient(abc.ABC):
    """Connection to a running bot."""

    @abc.abstractmethod
    def initialize(self, request: InitializeRequest) -> InitializeResponse | None:
        """Initialize the bot; raise NotImplementedError if the bot does not support it."""

    @abc.abstractmethod
    def invoke(self, method: str, request: Any) -> EvaluateResponse:
        """Call an evaluation method; raise on failure."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the connection."""


def is_valid_keccak256(value: str) -> bool:
    """Tell if the value is a lower-case 0x-prefixed 32-byte hex hash."""
    return bool(_KECCAK256.match(value))


def validate_finding(finding: Finding | None) -> None:
    """Raise ValueError if the finding has bad related alerts or addresses."""
    if finding is None:
        raise ValueError("nil finding")
    for alert in finding.related_alerts:
        if not is_valid_keccak256(alert):
            raise ValueError(f"bad related alert string: {alert}")
    for address in finding.addresses:
        if not _HEX_ADDRESS.match(address):
            raise ValueError(f"bad address string: {address}")


def validate_evaluate_alert_response(resp: EvaluateResponse | None) -> None:
    """Raise ValueError if the response or any of its findings is invalid."""
    if resp is None:
        raise ValueError("nil response")
    for finding in resp.findings:
        validate_finding(finding)


def _validate_initialize_response(response: InitializeResponse | None) -> None:
    if response is None or response.alert_config is None:
        return
    for subscription in response.alert_config.subscriptions:
        if not _BOT_ID.match(subscription.bot_id):
            raise ValueError(f"invalid bot id :{subscription.bot_id}")


def _is_critical_err(err: BaseException) -> bool:
    return isinstance(err, _CRITICAL_ERRORS)


def _image_hash(image: str) -> str:
    _, sep, digest = image.partition("@sha256:")
    return digest if sep else ""


def _rfc3339(t: datetime) -> str:
    return t.strftime("%Y-%m-%dT%H:%M:%SZ")


class Agent:
    """Receives blocks, transactions and alerts for one bot and produces results."""

    def __init__(
        self,
        config: AgentConfig,
        msg_client: MessageClient,
        tx_results: "queue.Queue[TxResult]",
        block_results: "queue.Queue[BlockResult]",
        combination_results: "queue.Queue[CombinationAlertResult]",
    ) -> None:
        self.config = config
        self.msg_client = msg_client
        self._tx_results = tx_results
        self._block_results = block_results
        self._combination_results = combination_results
        self._tx_requests: queue.Queue[EvaluateTxRequest] = queue.Queue(maxsize=DEFAULT_BUFFER_SIZE)
        self._block_requests: queue.Queue[EvaluateBlockRequest] = queue.Queue(maxsize=DEFAULT_BUFFER_SIZE)
        self._combination_requests: queue.Queue[EvaluateAlertRequest] = queue.Queue(maxsize=DEFAULT_BUFFER_SIZE)
        self._err_counter = ErrorCounter(3, _is_critical_err)
        self._client: AgentClient | None = None
        self._ready = threading.Event()
        self._closed = threading.Event()
        self._initialized = threading.Event()
        self._initialized.set()
        self._lock = threading.RLock()

    def alert_config(self) -> AlertConfig | None:
        with self._lock:
            return self.config.alert_config

    def _set_alert_config(self, cfg: AlertConfig | None) -> None:
        with self._lock:
            self.config.alert_config = cfg

    def is_combiner_bot(self) -> bool:
        with self._lock:
            cfg = self.config.alert_config
            return cfg is not None and len(cfg.subscriptions) > 0

    def tx_buffer_is_full(self) -> bool:
        return self._tx_requests.qsize() == DEFAULT_BUFFER_SIZE

    def _submit(self, requests: queue.Queue, request: Any) -> bool:
        if self.is_closed():
            raise AgentClosed(self.config.id)
        try:
            requests.put_nowait(request)
        except queue.Full:
            return False
        return True

    def submit_tx(self, request: EvaluateTxRequest) -> bool:
        """Queue a transaction request; False if the buffer is full."""
        return self._submit(self._tx_requests, request)

    def submit_block(self, request: EvaluateBlockRequest) -> bool:
        """Queue a block request; False if the buffer is full."""
        return self._submit(self._block_requests, request)

    def submit_combination(self, request: EvaluateAlertRequest) -> bool:
        """Queue an alert request; False if the buffer is full."""
        return self._submit(self._combination_requests, request)

    def close(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self._closed.set()
            if self._client is not None:
                self._client.close()

    def set_ready(self) -> None:
        self._ready.set()

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def is_closed(self) -> bool:
        return self._closed.is_set()

    def set_client(self, client: AgentClient) -> None:
        with self._lock:
            self._client = client

    def log_status(self) -> dict[str, Any]:
        """Log the agent's buffer sizes and state, and return them."""
        status = {
            "agent": self.config.id,
            "blockBuffer": self._block_requests.qsize(),
            "txBuffer": self._tx_requests.qsize(),
            "ready": self.is_ready(),
            "closed": self.is_closed(),
        }
        log.debug("agent status: %s", status)
        return status

    def start_processing(self) -> None:
        """Initialize the bot and process incoming requests in the background."""
        self._initialized.clear()
        threading.Thread(target=self._initialize, daemon=True).start()
        for target in (self._process_transactions, self._process_blocks, self._process_combination_alerts):
            threading.Thread(target=target, daemon=True).start()

    def wait_initialization(self) -> None:
        self._initialized.wait()

    def _initialize(self) -> None:
        try:
            try:
                response = self._client.initialize(
                    InitializeRequest(agent_id=self.config.id, proxy_host=JSON_RPC_PROXY_HOST)
                )
            except NotImplementedError as exc:
                log.info("initialize() method not implemented in bot %s - safe to ignore: %s", self.config.id, exc)
                return
            except Exception as exc:
                log.warning("bot %s initialization failed: %s", self.config.id, exc)
                return
            try:
                _validate_initialize_response(response)
            except ValueError as exc:
                log.warning("bot %s initialization validation failed: %s", self.config.id, exc)
                return
            if response is not None:
                self._set_alert_config(response.alert_config)
            log.info("bot %s initialization succeeded", self.config.id)
        finally:
            self._initialized.set()

    def _requests(self, requests: queue.Queue):
        """Yield queued requests until the agent is closed."""
        self._initialized.wait()
        while True:
            try:
                request = requests.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self.is_closed():
                    return
                continue
            if self.is_closed():
                return
            yield request

    def _call(self, method: str, request: Any) -> tuple[EvaluateResponse | None, BaseException | None, datetime, datetime]:
        requested = datetime.now(timezone.utc)
        try:
            resp = self._client.invoke(method, request)
            err = None
        except Exception as exc:
            resp, err = None, exc
        responded = datetime.now(timezone.utc)
        return resp, err, requested, responded

    def _finish(self, resp: EvaluateResponse, start: float) -> None:
        if len(resp.findings) > MAX_FINDINGS:
            dropped = len(resp.findings) - MAX_FINDINGS
            self.msg_client.publish(
                Subject.METRIC_AGENT,
                [self._metric(METRIC_FINDINGS_DROPPED, float(dropped))],
            )
            resp.findings = resp.findings[:MAX_FINDINGS]
        now = datetime.now(timezone.utc)
        resp.timestamp = _rfc3339(now)
        resp.latency_ms = int((time.monotonic() - start) * 1000)
        if resp.metadata is None:
            resp.metadata = {}
        resp.metadata["imageHash"] = _image_hash(self.config.image)

    def _metric(self, name: str, value: float) -> AgentMetric:
        return AgentMetric(
            agent_id=self.config.id,
            timestamp=_rfc3339(datetime.now(timezone.utc)),
            name=name,
            value=value,
        )

    def _give_up(self, err: BaseException, publish_stop_metric: bool) -> bool:
        log.error("error invoking agent %s: %s", self.config.id, err)
        if not self._err_counter.too_many_errs(err):
            return False
        log.error("too many errors - shutting down agent %s", self.config.id)
        self.close()
        self.msg_client.publish(Subject.AGENTS_ACTION_STOP, [self.config])
        if publish_stop_metric:
            self.msg_client.publish(Subject.METRIC_AGENT, [self._metric(METRIC_STOP, 1.0)])
        return True

    def _process_transactions(self) -> None:
        for request in self._requests(self._tx_requests):
            start = time.monotonic()
            resp, err, requested, responded = self._call(METHOD_EVALUATE_TX, request)
            if err is None:
                self._finish(resp, start)
                self._tx_results.put(
                    TxResult(self.config, request, resp, TrackingTimestamps(requested, responded))
                )
                continue
            if self._give_up(err, publish_stop_metric=True):
                return

    def _process_blocks(self) -> None:
        for request in self._requests(self._block_requests):
            start = time.monotonic()
            resp, err, requested, responded = self._call(METHOD_EVALUATE_BLOCK, request)
            if err is None:
                self._finish(resp, start)
                self._block_results.put(
                    BlockResult(self.config, request, resp, TrackingTimestamps(requested, responded))
                )
                continue
            if self._give_up(err, publish_stop_metric=False):
                return

    def _process_combination_alerts(self) -> None:
        for request in self._requests(self._combination_requests):
            start = time.monotonic()
            resp, err, requested, responded = self._call(METHOD_EVALUATE_ALERT, request)
            if err is not None:
                if self._give_up(err, publish_stop_metric=False):
                    return
                resp = EvaluateResponse()
            try:
                validate_evaluate_alert_response(resp)
            except ValueError as exc:
                log.error("evaluate combination response validation failed (request %s): %s", request.request_id, exc)
                continue
            self._finish(resp, start)
            self._combination_results.put(
                CombinationAlertResult(self.config, request, resp, TrackingTimestamps(requested, responded))
            )

    def should_process_block(self, block_number_hex: str) -> bool:
        """Tell if the block is within the agent's start and stop blocks."""
        try:
            block_number = decode_hex_uint64(block_number_hex)
        except ValueError:
            block_number = 0
        start, stop = self.config.start_block, self.config.stop_block
        at_least_start = start is None or block_number >= start
        at_most_stop = stop is None or block_number <= stop
        return at_least_start and at_most_stop

    def should_process_alert(self, event: AlertEvent) -> bool:
        """Tell if the agent subscribed to the alert's source bot and alert ID."""
        cfg = self.alert_config()
        if cfg is None:
            return False
        for subscription in cfg.subscriptions:
            to_bot = subscription.bot_id == "" or subscription.bot_id == event.source_bot_id
            to_alert = subscription.alert_id == "" or subscription.alert_id == event.alert_id
            if to_bot and to_alert:
                return True
        return False