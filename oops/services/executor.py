from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import jsonschema
import requests
from referencing.exceptions import Unresolvable

from oops.errors import ScriptError, StepError
from oops.schemas import HttpStep, Outcome, ScenarioSpec
from oops.services.cancellation import CancellationToken
from oops.services.http_client import HttpClient, HttpResponse, RequestBuildError
from oops.services.loader import ScenarioLoadError, load_scenario
from oops.services.scripts import ScriptRunner

LOGGER = logging.getLogger("oops.executor")


class ExecutionLog:
    """What a running scenario may do besides making requests: log, and record errors.

    Errors are kept in arrival order and belong to exactly one scenario.
    """

    def __init__(self, scenario: str, logger: logging.Logger = LOGGER) -> None:
        self.scenario = scenario
        self.errors: List[StepError] = []
        self._logger = logger

    def log(self, message: str, *args: object) -> None:
        self._logger.info("%s: " + message, Path(self.scenario).name, *args)

    def debug(self, message: str, *args: object) -> None:
        self._logger.debug("%s: " + message, Path(self.scenario).name, *args)

    def record_error(self, error: StepError) -> None:
        self.errors.append(error)
        self._logger.warning("%s: %s", Path(self.scenario).name, error)


@dataclass
class ScenarioResult:
    path: str
    outcome: Outcome
    errors: List[StepError] = field(default_factory=list)
    maintainers: List[str] = field(default_factory=list)
    steps_completed: int = 0

    @property
    def summary(self) -> str:
        return "\n".join(str(error) for error in self.errors)


ReportHook = Callable[[ScenarioResult, Mapping[str, Any], str], None]


def _outcome(log: ExecutionLog, token: CancellationToken) -> Outcome:
    if token.cancelled:
        return Outcome.cancelled
    if log.errors:
        return Outcome.error
    return Outcome.success


class ScenarioExecutor:
    """Run scenario files through prepare, run steps, check and report.

    Cancellation is polled before each file, before each step and before the check. Once
    observed, the remaining stages are skipped and the scenario reports ``cancelled``.
    """

    def __init__(
        self,
        *,
        http_client: Optional[HttpClient] = None,
        report: Optional[ReportHook] = None,
        script_runner_factory: Callable[..., ScriptRunner] = ScriptRunner,
    ) -> None:
        self._http = http_client or HttpClient()
        self._report = report
        self._script_runner_factory = script_runner_factory

    def execute(
        self,
        files: Sequence[str],
        *,
        token: CancellationToken,
        metadata: Optional[Mapping[str, Any]] = None,
        run_id: str = "",
    ) -> List[ScenarioResult]:
        results: List[ScenarioResult] = []
        for path in files:
            if token.cancelled:
                LOGGER.info("Test execution cancelled for scenario: %s", path)
            result = self.execute_file(path, token=token)
            if result is None:
                continue
            results.append(result)
            if self._report is not None:
                self._report(result, metadata or {}, run_id)
        return results

    def execute_file(self, path: str, *, token: CancellationToken) -> Optional[ScenarioResult]:
        """Run one file; returns ``None`` when the file cannot be read or parsed.

        Tag selection happens once, when the run is started, so every file handed here runs.
        """
        try:
            scenario = load_scenario(path)
        except ScenarioLoadError as exc:
            LOGGER.warning("%s", exc)
            return None

        log = ExecutionLog(path)
        if token.cancelled:
            return ScenarioResult(path, Outcome.cancelled, maintainers=list(scenario.maintainers))

        LOGGER.info("scenario: %s", path)
        completed = 0
        with self._script_runner_factory(env=scenario.env) as scripts:
            base = Path(path).name
            if scenario.prepare:
                self._run_stage("prepare", scenario.prepare, scripts, scripts.script_path(base, "prepare"), log)

            for index, step in enumerate(scenario.run):
                if token.cancelled:
                    log.log("test execution cancelled during run step %s", index)
                    break
                try:
                    self._run_step(index, step.http, scripts, log, base=base, scenario_dir=Path(path).parent)
                except Exception as exc:
                    LOGGER.exception("Unexpected error in run step %s of %s", index, path)
                    log.record_error(StepError("run", f"{type(exc).__name__}: {exc}", index=index))
                completed += 1

            if token.cancelled:
                log.log("test execution cancelled before check step")
            elif scenario.check:
                self._run_stage("check", scenario.check, scripts, scripts.script_path(base, "check"), log)

        outcome = _outcome(log, token)
        if log.errors:
            LOGGER.info("errs: %s", [str(error) for error in log.errors])
        return ScenarioResult(
            path,
            outcome,
            errors=list(log.errors),
            maintainers=list(scenario.maintainers),
            steps_completed=completed,
        )

    def _run_stage(self, stage: str, contents: str, scripts: ScriptRunner, target: Path, log: ExecutionLog) -> None:
        try:
            output = scripts.run(target, contents)
        except ScriptError as exc:
            log.record_error(StepError(stage, str(exc)))
            return
        if output:
            log.log("%s:\n%s", stage, output)

    def _resolve(
        self,
        value: Optional[str],
        field_name: str,
        index: int,
        scripts: ScriptRunner,
        target: Path,
        log: ExecutionLog,
    ) -> Optional[str]:
        """Substitute script values; on failure the error is recorded and ``None`` returned."""
        try:
            return scripts.resolve(value, target)
        except ScriptError as exc:
            log.record_error(StepError(field_name, str(exc), index=index))
            return None

    def _resolve_mapping(
        self,
        values: Mapping[str, str],
        field_name: str,
        index: int,
        scripts: ScriptRunner,
        prefix: str,
        log: ExecutionLog,
    ) -> Dict[str, str]:
        resolved: Dict[str, str] = {}
        for key, value in values.items():
            target = scripts.script_path(prefix, f"{field_name}.{key}")
            new_value = self._resolve(value, f"{field_name}.{key}", index, scripts, target, log)
            if new_value is not None:
                resolved[key] = new_value
        return resolved

    def _run_step(
        self,
        index: int,
        step: HttpStep,
        scripts: ScriptRunner,
        log: ExecutionLog,
        *,
        base: str,
        scenario_dir: Path,
    ) -> None:
        prefix = f"{base}_run{index}"
        url = self._resolve(step.url, "url", index, scripts, scripts.script_path(prefix, "url"), log)
        if url is None:
            return

        headers = self._resolve_mapping(step.headers, "headers", index, scripts, prefix, log)
        for key, value in headers.items():
            log.debug("[header] %s: %s", key, value)
        query_params = self._resolve_mapping(step.query_params, "query_params", index, scripts, prefix, log)
        files = self._resolve_mapping(step.files, "files", index, scripts, prefix, log)
        forms = self._resolve_mapping(step.forms, "forms", index, scripts, prefix, log)
        payload = None
        if step.payload:
            payload = self._resolve(step.payload, "payload", index, scripts, scripts.script_path(prefix, "payload"), log)

        try:
            prepared = self._http.build(
                step.method,
                url,
                headers=headers,
                query_params=query_params,
                files=files,
                forms=forms,
                payload=payload,
            )
        except RequestBuildError as exc:
            log.record_error(StepError("request", str(exc), index=index))
            return

        try:
            response = self._http.send(prepared)
        except requests.RequestException as exc:
            log.record_error(StepError("request", f"{step.method} {url}: {exc}", index=index))
            return
        log.log("%s %s -> %s", step.method, url, response.status_code)

        if step.response_out:
            try:
                Path(step.response_out).write_bytes(response.body)
            except OSError as exc:
                log.record_error(StepError("response_out", str(exc), index=index))
            log.debug("[response] %s", response.text)

        if step.asserts is None:
            return
        asserts = step.asserts
        if asserts.status_code is not None and response.status_code != asserts.status_code:
            log.record_error(
                StepError(
                    "asserts.status_code",
                    f"expected {asserts.status_code}, got {response.status_code}",
                    index=index,
                )
            )
        if asserts.validate_json:
            self._validate_json(index, asserts.validate_json, response, scenario_dir, log)
        if asserts.script:
            target = scripts.script_path(prefix, "assertscript")
            try:
                output = scripts.run(target, asserts.script)
            except ScriptError as exc:
                log.record_error(StepError("asserts.script", str(exc), index=index))
            else:
                if output:
                    log.log("asserts.script[%s]:\n%s", index, output)

    def _load_schema(self, reference: str, scenario_dir: Path) -> Any:
        text = reference.strip()
        if text.startswith("{"):
            return json.loads(text)
        if text.startswith(("http://", "https://")):
            return json.loads(self._http.fetch(text))
        if text.startswith("file://"):
            text = text[len("file://"):]
        path = Path(text)
        if not path.is_absolute():
            path = scenario_dir / path
        return json.loads(path.read_text(encoding="utf-8"))

    def _validate_json(
        self,
        index: int,
        reference: str,
        response: HttpResponse,
        scenario_dir: Path,
        log: ExecutionLog,
    ) -> None:
        try:
            schema = self._load_schema(reference, scenario_dir)
        except (OSError, ValueError, requests.RequestException) as exc:
            log.record_error(StepError("asserts.validate_json", f"cannot load schema {reference}: {exc}", index=index))
            return
        try:
            body = response.json()
        except ValueError as exc:
            log.record_error(StepError("asserts.validate_json", f"response is not JSON: {exc}", index=index))
            return
        try:
            jsonschema.validate(body, schema)
        except jsonschema.ValidationError as exc:
            log.record_error(StepError("asserts.validate_json", exc.message, index=index))
        except jsonschema.SchemaError as exc:
            log.record_error(StepError("asserts.validate_json", f"invalid schema: {exc.message}", index=index))
        except Unresolvable as exc:
            log.record_error(StepError("asserts.validate_json", f"unresolvable schema reference: {exc}", index=index))
