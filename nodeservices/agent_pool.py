"""The pool of bots that the scanner forwards evaluation requests to."""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from .agent import (
    Agent,
    AgentClient,
    AgentClosed,
    EvaluateAlertRequest,
    EvaluateBlockRequest,
    EvaluateTxRequest,
)
from .batch import decode_hex_uint64
from .models import (
    AgentConfig,
    AgentMetric,
    BlockResult,
    CombinationAlertResult,
    CombinerBotSubscription,
    MessageClient,
    Subject,
    TxResult,
)

log = logging.getLogger(__name__)

METRIC_TX_DROP = "agent.tx.drop"
METRIC_BLOCK_DROP = "agent.block.drop"

STATUS_OK = "ok"
STATUS_FAILING = "failing"
STATUS_INFO = "info"

_STATUS_LOG_INTERVAL = 30.0

Dialer = Callable[[AgentConfig], AgentClient]


class _WaitGroup:
    """Blocks waiters until the counter drops to zero."""

    def __init__(self, count: int) -> None:
        self._count = count
        self._cond = threading.Condition()

    def done(self, n: int) -> None:
        with self._cond:
            self._count = max(0, self._count - n)
            if self._count == 0:
                self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._count == 0)


def _drop_metric(agent_id: str, name: str) -> AgentMetric:
    now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return AgentMetric(agent_id=agent_id, timestamp=now, name=name, value=1.0)


class AgentPool:
    """Maintains the bots the scanner interacts with and fans requests out to them."""

    def __init__(self, msg_client: MessageClient, dialer: Dialer, wait_bots: int = 0) -> None:
        self.msg_client = msg_client
        self._dialer = dialer
        self._agents: list[Agent] = []
        self._lock = threading.RLock()
        self.tx_results: queue.Queue[TxResult] = queue.Queue()
        self.block_results: queue.Queue[BlockResult] = queue.Queue()
        self.combination_alert_results: queue.Queue[CombinationAlertResult] = queue.Queue()
        self._bot_wait: _WaitGroup | None = None
        if wait_bots > 0:
            self._bot_wait = _WaitGroup(wait_bots)
            threading.Thread(target=self._log_bot_wait, daemon=True).start()

        msg_client.subscribe(Subject.AGENTS_VERSIONS_LATEST, self.handle_agent_versions_update)
        msg_client.subscribe(Subject.AGENTS_STATUS_RUNNING, self.handle_status_running)
        msg_client.subscribe(Subject.AGENTS_STATUS_STOPPED, self.handle_status_stopped)
        threading.Thread(target=self._log_statuses_loop, daemon=True).start()

    def agents(self) -> list[Agent]:
        """A snapshot of the agents in the pool."""
        with self._lock:
            return list(self._agents)

    def health(self) -> list[dict[str, Any]]:
        """Health reports: the number of agents and of lagging agents."""
        with self._lock:
            total = len(self._agents)
            lagging = sum(1 for agent in self._agents if agent.tx_buffer_is_full())
        return [
            {"name": "agents.total", "status": STATUS_FAILING if total == 0 else STATUS_OK, "details": str(total)},
            {"name": "agents.lagging", "status": STATUS_INFO, "details": str(lagging)},
        ]

    def name(self) -> str:
        return "agent-pool"

    def _log_bot_wait(self) -> None:
        if self._bot_wait is not None:
            self._bot_wait.wait()
            log.info("started all bots")

    def _log_statuses_loop(self) -> None:
        stopped = threading.Event()
        while not stopped.wait(_STATUS_LOG_INTERVAL):
            for agent in self.agents():
                agent.log_status()

    def _wait_bots(self) -> None:
        if self._bot_wait is not None:
            self._bot_wait.wait()

    def _discard_agent(self, discarded: Agent) -> None:
        with self._lock:
            kept = []
            for agent in self._agents:
                if agent is discarded:
                    log.info("discarded agent %s", agent.config.container_name())
                else:
                    kept.append(agent)
            self._agents = kept

    def _send_metrics(self, metrics: list[AgentMetric]) -> None:
        if metrics:
            self.msg_client.publish(Subject.METRIC_AGENT, metrics)

    def _dispatch(
        self,
        agents: Sequence[Agent],
        accepts: Callable[[Agent], bool],
        submit: Callable[[Agent], bool],
        drop_metric: str,
    ) -> list[AgentMetric]:
        dropped: list[AgentMetric] = []
        for agent in agents:
            if not agent.is_ready() or not accepts(agent):
                continue
            if agent.is_closed():
                self._discard_agent(agent)
                continue
            try:
                sent = submit(agent)
            except AgentClosed:
                self._discard_agent(agent)
                continue
            if not sent:
                log.debug("agent %s request buffer is full - skipping", agent.config.id)
                dropped.append(_drop_metric(agent.config.id, drop_metric))
        return dropped

    def send_evaluate_tx_request(self, req: EvaluateTxRequest) -> None:
        """Send the request to every ready agent that should process its block."""
        self._wait_bots()
        dropped = self._dispatch(
            self.agents(),
            lambda agent: agent.should_process_block(req.event.block_number),
            lambda agent: agent.submit_tx(req),
            METRIC_TX_DROP,
        )
        self._send_metrics(dropped)

    def send_evaluate_block_request(self, req: EvaluateBlockRequest) -> None:
        """Send the request to every ready agent that should process the block."""
        self._wait_bots()
        dropped = self._dispatch(
            self.agents(),
            lambda agent: agent.should_process_block(req.event.block_number),
            lambda agent: agent.submit_block(req),
            METRIC_BLOCK_DROP,
        )
        try:
            block_number = decode_hex_uint64(req.event.block_number)
        except ValueError:
            block_number = 0
        self.msg_client.publish(Subject.SCANNER_BLOCK, block_number)
        self._send_metrics(dropped)

    def send_evaluate_alert_request(self, req: EvaluateAlertRequest) -> None:
        """Send the request to every ready agent subscribed to the alert."""
        if req.event is None:
            log.warning("bad request")
            return
        self._wait_bots()
        dropped = self._dispatch(
            self.agents(),
            lambda agent: agent.should_process_alert(req.event),
            lambda agent: agent.submit_combination(req),
            METRIC_BLOCK_DROP,
        )
        self.msg_client.publish(Subject.SCANNER_ALERT, None)
        self._send_metrics(dropped)

    def handle_agent_versions_update(self, payload: Sequence[AgentConfig] | None) -> None:
        """Replace the pool with the latest agent list; request runs and stops."""
        latest = list(payload or ())
        with self._lock:
            current_names = {agent.config.container_name() for agent in self._agents}
            new_agents: list[Agent] = []
            to_run: list[AgentConfig] = []
            for cfg in latest:
                if cfg.container_name() not in current_names:
                    new_agents.append(
                        Agent(
                            dataclasses.replace(cfg),
                            self.msg_client,
                            self.tx_results,
                            self.block_results,
                            self.combination_alert_results,
                        )
                    )
                    to_run.append(cfg)
                    log.info("will trigger start: %s", cfg.id)

            latest_names = {cfg.container_name() for cfg in latest}
            to_stop: list[AgentConfig] = []
            for agent in self._agents:
                if agent.config.container_name() in latest_names:
                    new_agents.append(agent)
                else:
                    agent.close()
                    to_stop.append(agent.config)
                    log.info("will trigger stop: %s (%s)", agent.config.id, agent.config.image)

            self._agents = new_agents
            if to_run:
                self.msg_client.publish(Subject.AGENTS_ACTION_RUN, to_run)
            if to_stop:
                self.msg_client.publish(Subject.AGENTS_ACTION_STOP, to_stop)

    def handle_status_running(self, payload: Sequence[AgentConfig] | None) -> None:
        """Attach to agents that started running and mark them ready."""
        with self._lock:
            to_stop: list[AgentConfig] = []
            ready: list[AgentConfig] = []
            new_subscriptions: list[CombinerBotSubscription] = []
            removed_subscriptions: list[CombinerBotSubscription] = []

            for cfg in payload or ():
                for agent in self._agents:
                    if agent.config.container_name() != cfg.container_name() or agent.is_ready():
                        continue
                    try:
                        client = self._dialer(agent.config)
                    except Exception as exc:
                        log.error("error while dialing agent %s: %s", agent.config.id, exc)
                        to_stop.append(agent.config)
                        if agent.is_combiner_bot():
                            removed_subscriptions.extend(agent.alert_config().subscriptions)
                        continue

                    agent.set_client(client)
                    agent.set_ready()
                    agent.start_processing()
                    agent.wait_initialization()

                    if agent.is_combiner_bot():
                        new_subscriptions.extend(agent.alert_config().subscriptions)
                    log.info("attached agent %s (%s)", agent.config.id, agent.config.image)
                    ready.append(agent.config)

            if ready:
                self.msg_client.publish(Subject.AGENTS_STATUS_ATTACHED, ready)
                if self._bot_wait is not None:
                    self._bot_wait.done(len(ready))
            if to_stop:
                self.msg_client.publish(Subject.AGENTS_ACTION_STOP, to_stop)
            if new_subscriptions:
                self.msg_client.publish(Subject.AGENTS_ALERT_SUBSCRIBE, new_subscriptions)
            if removed_subscriptions:
                self.msg_client.publish(Subject.AGENTS_ALERT_UNSUBSCRIBE, removed_subscriptions)

    def handle_status_stopped(self, payload: Sequence[AgentConfig] | None) -> None:
        """Close and remove the agents that stopped."""
        stopped_names = {cfg.container_name() for cfg in payload or ()}
        with self._lock:
            kept: list[Agent] = []
            for agent in self._agents:
                if agent.config.container_name() in stopped_names:
                    agent.close()
                    log.info("detached agent %s (%s)", agent.config.id, agent.config.image)
                else:
                    kept.append(agent)
            self._agents = kept