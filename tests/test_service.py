import signal
import threading
import uuid

import pytest

from nodeservices.service import (
    ContextCancelled,
    ExitTriggered,
    Service,
    container_main,
    init_main_context,
    interrupt_main_context,
    is_graceful_shutdown,
    start_services,
    trigger_exit,
)


class WaitingService(Service):
    def __init__(self, ctx):
        self.ctx = ctx
        self.cancelled = False

    def start(self):
        self.ctx.wait()
        self.cancelled = True
        raise ContextCancelled()

    def stop(self):
        pass

    def name(self):
        return "test"


class QuickService(Service):
    def __init__(self):
        self.stopped = False

    def start(self):
        pass

    def stop(self):
        self.stopped = True

    def name(self):
        return "quick"


def test_interrupt_cancels_service():
    ctx = init_main_context()
    threading.Timer(0.2, interrupt_main_context).start()
    svc = WaitingService(ctx)
    with pytest.raises(ContextCancelled):
        start_services(ctx, [svc])
    for _ in range(50):
        if svc.cancelled:
            break
        ctx.wait(0.02)
    assert svc.cancelled


def test_services_stopped_after_interrupt():
    ctx = init_main_context()
    svcs = [QuickService(), QuickService()]
    threading.Timer(0.1, interrupt_main_context).start()
    start_services(ctx, svcs)
    assert all(s.stopped for s in svcs)
    assert not is_graceful_shutdown()


def test_failing_start_cancels_context():
    class Failing(QuickService):
        def start(self):
            raise RuntimeError("nope")

    ctx = init_main_context()
    svc = Failing()
    with pytest.raises(ContextCancelled):
        start_services(ctx, [svc])
    assert ctx.is_cancelled()
    assert not svc.stopped


def test_trigger_exit_raises():
    ctx = init_main_context()
    threading.Timer(0.1, trigger_exit, args=(0,)).start()
    with pytest.raises(ExitTriggered):
        start_services(ctx, [QuickService()])


def test_sigterm_is_graceful():
    ctx = init_main_context()
    signal.raise_signal(signal.SIGTERM)
    assert ctx.wait(1.0)
    assert is_graceful_shutdown()


def test_exec_id_unique():
    first = init_main_context().exec_id()
    second = init_main_context().exec_id()
    assert str(uuid.UUID(first)) == first
    assert str(uuid.UUID(second)) == second
    assert first != second


def test_container_main_exits_with_code_on_trigger():
    def get_services(ctx, cfg):
        threading.Timer(0.1, trigger_exit, args=(0,)).start()
        return [QuickService()]

    with pytest.raises(SystemExit) as info:
        container_main("test", get_services, {"log_level": "info"})
    assert info.value.code == 77


def test_container_main_bad_level_skips_services():
    called = []
    container_main("test", lambda ctx, cfg: called.append(1) or [], {"log_level": "nonsense"})
    assert called == []