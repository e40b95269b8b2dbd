"""Keeps the node in sync with the agent list assigned to the scanner."""

from __future__ import annotations

import abc
import logging
import threading
import time
from typing import Any, Sequence

from .models import AgentConfig, MessageClient, Subject

log = logging.getLogger(__name__)


class RegistryStore(abc.ABC):
    """Source of the agents assigned to a scanner."""

    @abc.abstractmethod
    def get_agents_if_changed(self, scanner_address: str) -> tuple[Sequence[AgentConfig] | None, bool]:
        """Return the agent list and whether it changed since the last call."""


class RegistryService:
    """Publishes the latest agent list whenever it changes."""

    def __init__(self, scanner_address: str, registry_store: RegistryStore, msg_client: MessageClient) -> None:
        self.scanner_address = scanner_address
        self.registry_store = registry_store
        self.msg_client = msg_client
        self.agent_configs: Sequence[AgentConfig] | None = None
        self.last_checked: float | None = None
        self.last_change_detected: float | None = None
        self.last_error: BaseException | None = None
        self._sem = threading.Lock()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def publish_latest_agents(self) -> None:
        """Check the store once and publish the agents if they changed.

        Does nothing while another check is still running.
        """
        if not self._sem.acquire(blocking=False):
            return
        try:
            self.last_checked = time.time()
            try:
                agents, changed = self.registry_store.get_agents_if_changed(self.scanner_address)
            except Exception as exc:
                raise RuntimeError(f"failed to get the scanner list agents version: {exc}") from exc
            if changed:
                self.last_change_detected = time.time()
                log.info("publishing list of agents (count=%d)", len(agents or ()))
                self.agent_configs = agents
                self.msg_client.publish(Subject.AGENTS_VERSIONS_LATEST, agents)
            else:
                log.info("registry: no agent changes detected")
        finally:
            self._sem.release()

    def _run(self, interval: float) -> None:
        while True:
            try:
                self.publish_latest_agents()
                self.last_error = None
            except Exception as exc:
                self.last_error = exc
                log.error("failed to publish the latest agents: %s", exc)
            if self._stopped.wait(interval):
                return

    def start(self, interval: float) -> None:
        """Check right away and then every `interval` seconds in the background."""
        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, args=(interval,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def name(self) -> str:
        return "registry"

    def __repr__(self) -> str:
        return f"RegistryService(scanner_address={self.scanner_address!r})"

    def _health(self) -> dict[str, Any]:
        return {
            "event.checked.error": self.last_error,
            "event.checked.time": self.last_checked,
            "event.change-detected.time": self.last_change_detected,
        }