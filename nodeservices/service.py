"""Service lifecycle: main context, signal handling and start/stop orchestration."""

from __future__ import annotations

import abc
import logging
import signal
import sys
import threading
import time
import uuid
from typing import Any, Callable, Mapping, Sequence

log = logging.getLogger(__name__)

DEFAULT_SERVICE_START_DELAY = 600.0
GRACEFUL_SHUTDOWN_SIGNAL = signal.SIGTERM
EXIT_CODE_TRIGGERED = 77


class ExitTriggered(Exception):
    """Exit was triggered internally."""

    def __init__(self) -> None:
        super().__init__("exit was triggered")


class ContextCancelled(Exception):
    """The main context was cancelled before all services started."""

    def __init__(self) -> None:
        super().__init__("context canceled")


class Service(abc.ABC):
    """A startable and stoppable service."""

    @abc.abstractmethod
    def start(self) -> None:
        """Start the service."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop the service."""

    @abc.abstractmethod
    def name(self) -> str:
        """Name of the service."""


class MainContext:
    """Cancellable context carrying a unique execution ID."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._exec_id = str(uuid.uuid1())

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def exec_id(self) -> str:
        return self._exec_id


class _State:
    current: MainContext | None = None
    graceful_shutdown = False
    exit_triggered = False


def _handle_signal(signum: int, _frame: Any) -> None:
    log.info("received signal: %s", signal.Signals(signum).name)
    _State.graceful_shutdown = signum == GRACEFUL_SHUTDOWN_SIGNAL
    if _State.current is not None:
        _State.current.cancel()


def init_main_context() -> MainContext:
    """Create the main context and cancel it on termination signals."""
    ctx = MainContext()
    _State.current = ctx
    _State.graceful_shutdown = False
    _State.exit_triggered = False
    names = ("SIGHUP", "SIGINT", "SIGTERM", "SIGQUIT")
    for sig in (getattr(signal, n) for n in names if hasattr(signal, n)):
        try:
            signal.signal(sig, _handle_signal)
        except ValueError:
            break  # not in the main thread
    return ctx


def interrupt_main_context() -> None:
    """Interrupt the main context as if an interrupt signal was received."""
    _State.graceful_shutdown = False
    if _State.current is not None:
        _State.current.cancel()


def trigger_exit(delay: float) -> None:
    """Wait for the delay, then mark exit as triggered and interrupt."""
    if delay > 0:
        log.info("waiting %ss before triggering exit", delay)
        time.sleep(delay)
        log.info("done waiting %ss before triggering exit", delay)
    _State.exit_triggered = True
    interrupt_main_context()


def is_graceful_shutdown() -> bool:
    return _State.graceful_shutdown


def start_services(ctx: MainContext, services: Sequence[Service]) -> None:
    """Start all services, wait for the context to end, then stop them."""
    for svc in services:
        started = threading.Event()
        svc_name = svc.name()

        def run(svc: Service = svc, started: threading.Event = started, svc_name: str = svc_name) -> None:
            log.info("starting service %s", svc_name)
            try:
                svc.start()
            except Exception:
                log.exception("failed to start service %s", svc_name)
                ctx.cancel()
                return
            started.set()

        threading.Thread(target=run, daemon=True).start()
        deadline = time.monotonic() + DEFAULT_SERVICE_START_DELAY
        while not started.is_set():
            if ctx.is_cancelled():
                raise ContextCancelled()
            if time.monotonic() >= deadline:
                log.error("took too long to start service %s", svc_name)
                ctx.cancel()
                break
            started.wait(0.02)

    ctx.wait()
    log.info("context is done")

    for svc in services:
        log.info("stopping service %s", svc.name())
        try:
            svc.stop()
        except Exception as exc:
            log.info("stopped service %s with error: %s", svc.name(), exc)
        else:
            log.info("stopped service %s", svc.name())

    if _State.exit_triggered:
        raise ExitTriggered()


def container_main(
    name: str,
    get_services: Callable[[MainContext, Mapping[str, Any]], Sequence[Service]],
    config: Mapping[str, Any],
) -> None:
    """Run the services of a container until shutdown."""
    level_name = str(config.get("log_level", "info")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        log.error("container %s: could not initialize log level", name)
        return
    logging.basicConfig(level=level)
    log.info("container %s: starting", name)
    try:
        ctx = init_main_context()
        try:
            services = get_services(ctx, config)
        except Exception:
            log.exception("container %s: could not initialize services", name)
            return
        try:
            start_services(ctx, services)
        except ExitTriggered:
            log.info("container %s: exiting due to internal trigger", name)
            sys.exit(EXIT_CODE_TRIGGERED)
        except Exception:
            log.exception("container %s: failed to start services", name)
        finally:
            ctx.cancel()
    finally:
        log.info("container %s: exiting", name)