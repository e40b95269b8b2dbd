"""Alert batch data and the aggregation of notifications into batches."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .models import AgentMetrics

log = logging.getLogger(__name__)

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def decode_hex_uint64(value: str) -> int:
    """Decode a 0x-prefixed hex quantity into an unsigned 64-bit integer.

    Raises ValueError for a missing prefix, empty number, leading zeros,
    invalid digits or values that do not fit in 64 bits.
    """
    if len(value) < 2 or value[0] != "0" or value[1] not in "xX":
        raise ValueError(f"hex string without 0x prefix: {value!r}")
    digits = value[2:]
    if not digits:
        raise ValueError("hex string \"0x\"")
    if len(digits) > 1 and digits[0] == "0":
        raise ValueError(f"hex number with leading zero digits: {value!r}")
    if len(digits) > 16:
        raise ValueError(f"hex number > 64 bits: {value!r}")
    if any(ch not in _HEX_DIGITS for ch in digits):
        raise ValueError(f"invalid hex string: {value!r}")
    return int(digits, 16)


@dataclass
class Finding:
    """A finding reported by a bot."""

    severity: int = 0
    private: bool = False
    related_alerts: list[str] = field(default_factory=list)
    addresses: list[str] = field(default_factory=list)


@dataclass
class Alert:
    """An alert created from a finding."""

    id: str = ""
    finding: Finding | None = None


@dataclass
class SignedAlert:
    """An alert together with its signature."""

    alert: Alert | None = None
    signature: str = ""


@dataclass
class AgentInfo:
    """Identity of the agent that produced a result."""

    id: str = ""
    image: str = ""
    manifest: str = ""


@dataclass
class BlockEvent:
    """The block a block evaluation was made for."""

    block_number: str = ""
    block_hash: str = ""
    block_timestamp: str = ""


@dataclass
class TransactionEvent:
    """The transaction a transaction evaluation was made for."""

    tx_hash: str = ""
    block_number: str = ""
    block_hash: str = ""
    block_timestamp: str = ""


@dataclass
class AlertEvent:
    """The alert a combination evaluation was made for."""

    alert_hash: str = ""
    alert_id: str = ""
    source_bot_id: str = ""
    block_number: int = 0
    chain_id: int = 0


@dataclass
class NotifyRequest:
    """A notification about one evaluation, with or without an alert."""

    agent_info: AgentInfo
    signed_alert: SignedAlert | None = None
    block_event: BlockEvent | None = None
    tx_event: TransactionEvent | None = None
    alert_event: AlertEvent | None = None
    response_private: bool = False


@dataclass
class AgentAlerts:
    """Alerts of one agent."""

    agent_manifest: str
    alerts: list[SignedAlert] = field(default_factory=list)


def _agent_alerts_for(results: list[AgentAlerts], agent: AgentInfo) -> AgentAlerts:
    for agent_alerts in results:
        if agent_alerts.agent_manifest == agent.manifest:
            return agent_alerts
    created = AgentAlerts(agent_manifest=agent.manifest)
    results.append(created)
    return created


@dataclass
class BatchAgent:
    """What an agent processed within a batch."""

    info: AgentInfo
    blocks: list[int] = field(default_factory=list)
    transactions: list[str] = field(default_factory=list)
    combinations: list[str] = field(default_factory=list)


@dataclass
class TransactionResults:
    """Alerts of all agents for one transaction."""

    transaction: TransactionEvent
    results: list[AgentAlerts] = field(default_factory=list)

    def get_agent_alerts(self, agent: AgentInfo) -> AgentAlerts:
        return _agent_alerts_for(self.results, agent)


@dataclass
class BlockResults:
    """Alerts of all agents for one block and its transactions."""

    block_hash: str
    block_number: int
    block_timestamp: str
    transactions: list[TransactionResults] = field(default_factory=list)
    results: list[AgentAlerts] = field(default_factory=list)

    def get_transaction_results(self, tx: TransactionEvent) -> TransactionResults:
        for tx_res in self.transactions:
            if tx_res.transaction.tx_hash == tx.tx_hash:
                return tx_res
        created = TransactionResults(transaction=tx)
        self.transactions.append(created)
        return created

    def get_agent_alerts(self, agent: AgentInfo) -> AgentAlerts:
        return _agent_alerts_for(self.results, agent)


@dataclass
class CombinationAlertResults:
    """Alerts of all agents for one source alert."""

    alert_event: AlertEvent
    results: list[AgentAlerts] = field(default_factory=list)

    def get_agent_alerts(self, agent: AgentInfo) -> AgentAlerts:
        return _agent_alerts_for(self.results, agent)


@dataclass
class AlertBatch:
    """A batch of alerts and the processing record of all agents."""

    chain_id: int = 0
    block_start: int = 0
    block_end: int = 0
    alert_count: int = 0
    max_severity: int = 0
    agents: list[BatchAgent] = field(default_factory=list)
    results: list[BlockResults] = field(default_factory=list)
    combination_alerts: list[CombinationAlertResults] = field(default_factory=list)
    private_alerts: list[AgentAlerts] = field(default_factory=list)
    metrics: list[AgentMetrics] = field(default_factory=list)
    inspection_results: Any = None
    scanner_version: Any = None
    parent: str = ""
    latest_block_input: int = 0

    def get_private_alerts(self, notif: NotifyRequest) -> AgentAlerts:
        return _agent_alerts_for(self.private_alerts, notif.agent_info)

    def append_alert(self, notif: NotifyRequest) -> None:
        """Add the notification's alert, if any, to the list it belongs to."""
        is_private = False
        signed = notif.signed_alert
        if signed is not None and signed.alert is not None and signed.alert.finding is not None:
            is_private = signed.alert.finding.private or notif.response_private
        has_alert = signed is not None

        agent_alerts: AgentAlerts | None = None
        if is_private:
            if has_alert:
                agent_alerts = self.get_private_alerts(notif)
        elif notif.block_event is not None:
            event = notif.block_event
            block_num = decode_hex_uint64(event.block_number)
            self.add_batch_agent(notif.agent_info, block_num, "", "")
            block_res = self.get_block_results(event.block_hash, block_num, event.block_timestamp)
            if has_alert:
                agent_alerts = block_res.get_agent_alerts(notif.agent_info)
        elif notif.tx_event is not None:
            event = notif.tx_event
            block_num = decode_hex_uint64(event.block_number)
            self.add_batch_agent(notif.agent_info, block_num, event.tx_hash, "")
            block_res = self.get_block_results(event.block_hash, block_num, event.block_timestamp)
            if has_alert:
                tx_res = block_res.get_transaction_results(event)
                agent_alerts = tx_res.get_agent_alerts(notif.agent_info)
        elif notif.alert_event is not None:
            event = notif.alert_event
            self.add_batch_agent(notif.agent_info, 0, "", event.source_bot_id)
            comb_res = self.get_combination_alert_results(event)
            if has_alert:
                agent_alerts = comb_res.get_agent_alerts(notif.agent_info)

        if agent_alerts is None:
            return
        agent_alerts.alerts.append(signed)
        self.alert_count += 1

    def add_batch_agent(self, agent: AgentInfo, block_number: int, tx_hash: str, subscription: str) -> None:
        """Record that the agent processed a block, a transaction or a subscribed alert."""
        batch_agent = next((ba for ba in self.agents if ba.info.manifest == agent.manifest), None)
        if batch_agent is None:
            batch_agent = BatchAgent(info=agent)
            self.agents.append(batch_agent)

        if block_number != 0:
            if block_number not in batch_agent.blocks:
                batch_agent.blocks.append(block_number)
            if tx_hash:
                batch_agent.transactions.append(tx_hash)
            return

        if subscription:
            if subscription not in batch_agent.combinations:
                batch_agent.combinations.append(subscription)
            return

        log.error("no block number or combination while adding batch agent")

    def get_block_results(self, block_hash: str, block_number: int, block_timestamp: str) -> BlockResults:
        for block_res in self.results:
            if block_res.block_number == block_number:
                return block_res
        created = BlockResults(block_hash=block_hash, block_number=block_number, block_timestamp=block_timestamp)
        self.results.append(created)
        return created

    def get_combination_alert_results(self, alert_event: AlertEvent) -> CombinationAlertResults:
        for res in self.combination_alerts:
            if res.alert_event.alert_hash == alert_event.alert_hash:
                return res
        created = CombinationAlertResults(alert_event=alert_event)
        self.combination_alerts.append(created)
        return created