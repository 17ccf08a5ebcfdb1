"""
Worker process wiring.

One subscriber thread per process receives commands and hands them to the coordinator.
Replicas run this loop independently; the run tracker is the only state they share.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional, Union

from oops.config import Settings
from oops.errors import ConfigurationError
from oops.services.cancellation import CancellationRegistry
from oops.services.channel import MessageChannel, create_command_channel, create_report_channel
from oops.services.coordinator import RunCoordinator
from oops.services.executor import ScenarioExecutor
from oops.services.loader import discover_scenarios
from oops.services.reporter import Reporter
from oops.services.tracker import RunTracker, create_run_tracker

LOGGER = logging.getLogger("oops.worker")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@dataclass
class Runtime:
    settings: Settings
    channel: MessageChannel
    tracker: RunTracker
    registry: CancellationRegistry
    reporter: Reporter
    coordinator: RunCoordinator


def build_runtime(settings: Settings, *, channel: Optional[MessageChannel] = None) -> Runtime:
    settings.validate()
    command_channel = channel or create_command_channel(settings)
    tracker = create_run_tracker(
        settings.redis_host,
        password=settings.redis_password,
        timeout_seconds=settings.redis_timeout_seconds,
    )
    registry = CancellationRegistry()
    reporter = Reporter(
        slack_url=settings.slack_url,
        channel=create_report_channel(settings),
        attributes=settings.distribution_attributes(),
    )
    executor = ScenarioExecutor(report=reporter)
    coordinator = RunCoordinator(
        channel=command_channel,
        executor=executor,
        tracker=tracker,
        registry=registry,
        reporter=reporter,
        scenario_files=settings.scenario_files,
        scenario_dir=settings.scenario_dir,
        tags=settings.tags,
    )
    return Runtime(settings, command_channel, tracker, registry, reporter, coordinator)


class Worker:
    """Run the channel subscription on a dedicated thread until stopped."""

    def __init__(self, coordinator: RunCoordinator, channel: MessageChannel) -> None:
        self._coordinator = coordinator
        self._channel = channel
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _handle(self, payload: Union[bytes, str]) -> bool:
        try:
            return self._coordinator.handle(payload)
        except Exception:
            LOGGER.exception("Unhandled error while processing message")
            return True

    def _run(self) -> None:
        try:
            self._channel.subscribe(self._handle, self._stop)
        except ConfigurationError as exc:
            LOGGER.error("Subscriber failed to start: %s", exc)
        except Exception:
            LOGGER.exception("Subscriber loop stopped unexpectedly")
        finally:
            self._stop.set()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="oops-subscriber")
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._channel.close()

    def wait(self) -> None:
        while not self._stop.wait(0.5):
            pass
        if self._thread is not None:
            self._thread.join()


_runtime: Optional[Runtime] = None


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(Settings.from_env())
    return _runtime


def main() -> int:
    settings = Settings.from_env()
    configure_logging("DEBUG" if settings.verbose else settings.log_level)
    began = time.time()
    LOGGER.info("start oops on %s", time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(began)))
    try:
        if settings.scenario_files or settings.scenario_dir:
            discover_scenarios(settings.scenario_files, settings.scenario_dir)
        runtime = build_runtime(settings)
    except ConfigurationError as exc:
        LOGGER.error("%s", exc)
        return 2

    worker = Worker(runtime.coordinator, runtime.channel)

    def _shutdown(signum, _frame) -> None:
        LOGGER.info("received %s, shutting down", signal.Signals(signum).name)
        worker.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    worker.start()
    worker.wait()
    LOGGER.info("stop oops after %.1fs", time.time() - began)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
