"""Shared data types and an in-process message client."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

log = logging.getLogger(__name__)


class Subject(str, Enum):
    """Message subjects exchanged between node services."""

    AGENTS_VERSIONS_LATEST = "agents.versions.latest"
    AGENTS_ACTION_RUN = "agents.action.run"
    AGENTS_ACTION_STOP = "agents.action.stop"
    AGENTS_STATUS_RUNNING = "agents.status.running"
    AGENTS_STATUS_STOPPED = "agents.status.stopped"
    AGENTS_STATUS_ATTACHED = "agents.status.attached"
    AGENTS_ALERT_SUBSCRIBE = "agents.alert.subscribe"
    AGENTS_ALERT_UNSUBSCRIBE = "agents.alert.unsubscribe"
    METRIC_AGENT = "metric.agent"
    SCANNER_BLOCK = "scanner.block"
    SCANNER_ALERT = "scanner.alert"
    INSPECTION_DONE = "inspection.done"


@dataclass(frozen=True)
class CombinerBotSubscription:
    """A subscription of a combiner bot to another bot's alerts."""

    bot_id: str = ""
    alert_id: str = ""


@dataclass
class AlertConfig:
    """Alert subscriptions of a bot."""

    subscriptions: list[CombinerBotSubscription] = field(default_factory=list)


@dataclass
class AgentConfig:
    """Configuration of one agent (bot)."""

    id: str = ""
    image: str = ""
    start_block: int | None = None
    stop_block: int | None = None
    alert_config: AlertConfig | None = None

    def container_name(self) -> str:
        """Name of the container that runs this agent."""
        return f"agent-{self.id}"


@dataclass
class AgentMetric:
    """A single metric data point reported for an agent."""

    agent_id: str
    timestamp: str
    name: str
    value: float


@dataclass
class MetricSummary:
    """Aggregated statistics of one metric."""

    name: str
    count: int = 0
    max: float = 0.0
    average: float = 0.0
    sum: float = 0.0
    p95: float = 0.0


@dataclass
class AgentMetrics:
    """All metric summaries of one agent for one time bucket."""

    agent_id: str
    timestamp: str
    metrics: list[MetricSummary] = field(default_factory=list)


@dataclass
class TxResult:
    """Transaction evaluation request and response."""

    agent_config: AgentConfig
    request: Any
    response: Any
    timestamps: Any = None


@dataclass
class BlockResult:
    """Block evaluation request and response."""

    agent_config: AgentConfig
    request: Any
    response: Any
    timestamps: Any = None


@dataclass
class CombinationAlertResult:
    """Alert evaluation request and response."""

    agent_config: AgentConfig
    request: Any
    response: Any
    timestamps: Any = None


@dataclass
class AgentFile:
    """Agent manifest file contents."""

    image_reference: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AgentFile":
        manifest = data.get("manifest") or {}
        return cls(image_reference=manifest.get("imageReference", ""))


class MessageClient:
    """In-process publish/subscribe client; records every published message."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[[Any], Any]]] = defaultdict(list)
        self._lock = threading.Lock()
        self.published: list[tuple[str, Any]] = []

    def subscribe(self, subject: str, handler: Callable[[Any], Any]) -> None:
        with self._lock:
            self._handlers[str(subject)].append(handler)

    def publish(self, subject: str, payload: Any) -> None:
        with self._lock:
            self.published.append((subject, payload))
            handlers = list(self._handlers.get(str(subject), ()))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                log.exception("message handler failed for subject %s", subject)