import threading
import time

import pytest

from nodeservices.models import AgentConfig, MessageClient, Subject
from nodeservices.registry import RegistryService, RegistryStore

TEST_SCANNER_ADDRESS = "0xDc64a140Aa3E981100a9becA4E685f962f0cF6C9"
TEST_AGENT_ID = "0x2000000000000000000000000000000000000000000000000000000000000000"
TEST_IMAGE_REF = (
    "bafybeide7cspdmxqjcpa3qvrayvfpiix2it4v6mjejjc22q72zbq7rm4re"
    "@sha256:cdd4ddccf5e9c740eb4144bcc68e3ea3a056789ec7453e94a6416dcfc80937a4"
)
TEST_CONTAINER_REGISTRY = "some.reg.io"


class FakeStore(RegistryStore):
    def __init__(self, agents=None, changed=False, error=None):
        self.agents = agents
        self.changed = changed
        self.error = error
        self.calls = []

    def get_agents_if_changed(self, scanner_address):
        self.calls.append(scanner_address)
        if self.error is not None:
            raise self.error
        return self.agents, self.changed


class BlockingStore(RegistryStore):
    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def get_agents_if_changed(self, scanner_address):
        self.calls += 1
        self.entered.set()
        self.release.wait(5)
        return None, False


def test_publish_changes():
    configs = [AgentConfig(id=TEST_AGENT_ID, image=f"{TEST_CONTAINER_REGISTRY}/{TEST_IMAGE_REF}")]
    store = FakeStore(agents=configs, changed=True)
    client = MessageClient()
    service = RegistryService(TEST_SCANNER_ADDRESS, store, client)

    service.publish_latest_agents()

    assert store.calls == [TEST_SCANNER_ADDRESS]
    assert client.published == [(Subject.AGENTS_VERSIONS_LATEST, configs)]
    assert service.agent_configs == configs
    assert service.last_change_detected is not None


def test_do_not_publish_changes():
    store = FakeStore(agents=None, changed=False)
    client = MessageClient()
    service = RegistryService(TEST_SCANNER_ADDRESS, store, client)

    service.publish_latest_agents()

    assert store.calls == [TEST_SCANNER_ADDRESS]
    assert client.published == []
    assert service.last_change_detected is None
    assert service.last_checked is not None


def test_store_error_is_wrapped():
    store = FakeStore(error=OSError("boom"))
    service = RegistryService(TEST_SCANNER_ADDRESS, store, MessageClient())
    with pytest.raises(RuntimeError, match="failed to get the scanner list agents version: boom"):
        service.publish_latest_agents()


def test_concurrent_check_is_skipped():
    store = BlockingStore()
    service = RegistryService(TEST_SCANNER_ADDRESS, store, MessageClient())
    worker = threading.Thread(target=service.publish_latest_agents)
    worker.start()
    assert store.entered.wait(5)
    service.publish_latest_agents()
    assert store.calls == 1
    store.release.set()
    worker.join(5)
    service.publish_latest_agents()
    assert store.calls == 2


def test_start_checks_and_stop_ends_loop():
    configs = [AgentConfig(id=TEST_AGENT_ID)]
    store = FakeStore(agents=configs, changed=True)
    client = MessageClient()
    service = RegistryService(TEST_SCANNER_ADDRESS, store, client)
    service.start(0.01)
    deadline = time.monotonic() + 5
    while len(store.calls) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    service.stop()
    count = len(store.calls)
    assert count >= 2
    time.sleep(0.05)
    assert len(store.calls) == count
    assert client.published[0] == (Subject.AGENTS_VERSIONS_LATEST, configs)


def test_loop_records_error():
    store = FakeStore(error=OSError("down"))
    service = RegistryService(TEST_SCANNER_ADDRESS, store, MessageClient())
    service.start(0.01)
    deadline = time.monotonic() + 5
    while service.last_error is None and time.monotonic() < deadline:
        time.sleep(0.01)
    service.stop()
    assert str(service.last_error) == "failed to get the scanner list agents version: down"
    assert store.calls[0] == TEST_SCANNER_ADDRESS


def test_name():
    service = RegistryService(TEST_SCANNER_ADDRESS, FakeStore(), MessageClient())
    assert service.name() == "registry"