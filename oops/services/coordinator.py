from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from oops.errors import CommandError, ConfigurationError, TransportError
from oops.schemas import ProcessCommand, StartCommand, decode_command, encode_command
from oops.services.cancellation import CancellationRegistry, cancellation_key
from oops.services.channel import MessageChannel
from oops.services.executor import ScenarioExecutor, ScenarioResult
from oops.services.loader import resolve_scenarios
from oops.services.reporter import Reporter, message_id
from oops.services.tracker import RunTracker

LOGGER = logging.getLogger("oops.coordinator")


@dataclass
class Dispatch:
    run_id: str
    published: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class RunCoordinator:
    """Interpret inbound commands for this process.

    ``start`` resolves the scenario set and publishes one ``process`` command per file;
    ``process`` executes a single file. Handling is serialized by one lock per process.
    """

    def __init__(
        self,
        *,
        channel: MessageChannel,
        executor: ScenarioExecutor,
        tracker: RunTracker,
        registry: CancellationRegistry,
        reporter: Reporter,
        scenario_files: Sequence[str] = (),
        scenario_dir: Optional[str] = None,
        tags: Sequence[str] = (),
    ) -> None:
        self._channel = channel
        self._executor = executor
        self._tracker = tracker
        self._registry = registry
        self._reporter = reporter
        self._scenario_files = list(scenario_files)
        self._scenario_dir = scenario_dir
        self._tags = list(tags)
        self._lock = threading.Lock()

    @property
    def registry(self) -> CancellationRegistry:
        return self._registry

    @property
    def tracker(self) -> RunTracker:
        return self._tracker

    def handle(self, payload: Union[bytes, str]) -> bool:
        """Handle one inbound message; malformed payloads are logged and treated as handled."""
        with self._lock:
            try:
                command = decode_command(payload)
            except CommandError as exc:
                LOGGER.warning("Dropping malformed command: %s", exc)
                return True
            if isinstance(command, StartCommand):
                self.start(command)
            else:
                self.process(command)
            return True

    def start(self, command: StartCommand) -> Optional[Dispatch]:
        run_id = command.id or str(uuid.uuid4())
        tags = command.tags or self._tags
        try:
            files = resolve_scenarios(self._scenario_files, self._scenario_dir, tags, command.metadata)
        except ConfigurationError as exc:
            LOGGER.error("Run %s not started: %s", run_id, exc)
            return None
        if not files:
            LOGGER.warning("Run %s has no scenarios left after filtering", run_id)
            return None

        dispatch = Dispatch(run_id=run_id)
        self._track(self._tracker.set, run_id, len(files))
        for path in files:
            process = ProcessCommand(id=run_id, scenario=path, metadata=command.metadata)
            try:
                self._channel.publish(message_id(), encode_command(process))
            except TransportError as exc:
                LOGGER.warning("Publish failed for %s: %s", path, exc)
                dispatch.failed.append(path)
                self._track(self._tracker.decrement, run_id)
                continue
            dispatch.published.append(path)

        if not dispatch.published:
            self._track(self._tracker.delete, run_id)
        self._reporter.batch_started(run_id, dispatch.published)
        return dispatch

    def process(self, command: ProcessCommand) -> List[ScenarioResult]:
        LOGGER.info("process: run=%s scenario=%s", command.id, command.scenario)
        key = cancellation_key(command.metadata)
        try:
            with self._registry.register(key) as token:
                return self._executor.execute(
                    [command.scenario],
                    token=token,
                    metadata=command.metadata,
                    run_id=command.id,
                )
        finally:
            self._complete_unit(command.id)

    def _complete_unit(self, run_id: str) -> None:
        remaining = self._track(self._tracker.decrement, run_id)
        if remaining is None:
            LOGGER.info("Run %s completion state unknown on this replica", run_id)
            return
        if remaining > 0:
            LOGGER.info("Run %s has %s scenario(s) remaining", run_id, remaining)
            return
        # Only the decrement that reached zero gets here, so completion is reported once.
        self._track(self._tracker.delete, run_id)
        self._reporter.run_completed(run_id)

    def _track(self, operation, *args):
        try:
            return operation(*args)
        except TransportError as exc:
            LOGGER.warning("Run tracker unavailable: %s", exc)
            return None
