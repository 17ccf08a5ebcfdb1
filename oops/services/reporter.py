from __future__ import annotations

import http.client
import json
import logging
import secrets
import string
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from oops.constants import (
    ANALYSIS_FIELD,
    CANCELLED_MESSAGE,
    MESSAGE_ID_LENGTH,
    SLACK_COLOR_CANCELLED,
    SLACK_COLOR_FAILURE,
    SLACK_COLOR_SUCCESS,
    SLACK_FOOTER,
)
from oops.errors import TransportError
from oops.schemas import Outcome, ReportMessage
from oops.services.executor import ScenarioResult

LOGGER = logging.getLogger("oops.reporter")

_ALPHANUMERIC = string.ascii_letters + string.digits


def message_id(length: int = MESSAGE_ID_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


class SlackWebhook:
    def post(self, url: str, payload: Dict[str, object]) -> None:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(url, data=data, headers={"Content-Type": "application/json"})
        with urllib.request.urlopen(request, timeout=30) as response:
            response.read()


def slack_attachment(title: str, text: str, color: str) -> Dict[str, object]:
    return {
        "attachments": [
            {
                "fallback": title,
                "color": color,
                "title": title,
                "text": text,
                "footer": SLACK_FOOTER,
                "ts": int(time.time()),
            }
        ]
    }


def report_attributes(static: Mapping[str, str], metadata: Mapping[str, Any]) -> Dict[str, str]:
    """Flatten distribution info and caller metadata into one string map.

    Non-string and empty metadata values are dropped; the analysis sub-map is merged key by key.
    """
    attributes: Dict[str, str] = dict(static)
    for key, value in metadata.items():
        if key == ANALYSIS_FIELD:
            continue
        if isinstance(value, str) and value:
            attributes[key] = value
    analysis = metadata.get(ANALYSIS_FIELD)
    if isinstance(analysis, Mapping):
        for key, value in analysis.items():
            attributes[str(key)] = str(value)
    return attributes


class Reporter:
    """Send one notification per scenario outcome to the configured sinks.

    Sinks are independent and best-effort: a failing sink is logged and never affects the
    outcome or the other sink.
    """

    def __init__(
        self,
        *,
        slack_url: Optional[str] = None,
        channel: Optional[Any] = None,
        attributes: Optional[Mapping[str, str]] = None,
        webhook: Optional[SlackWebhook] = None,
    ) -> None:
        self._slack_url = slack_url
        self._channel = channel
        self._attributes = dict(attributes or {})
        self._webhook = webhook or SlackWebhook()

    def report(self, result: ScenarioResult, metadata: Mapping[str, Any], run_id: str = "") -> None:
        if self._slack_url:
            self._notify_slack(self._slack_payload(result))
        if self._channel is not None:
            self._publish(self.report_message(result, metadata, run_id))

    def __call__(self, result: ScenarioResult, metadata: Mapping[str, Any], run_id: str = "") -> None:
        self.report(result, metadata, run_id)

    def batch_started(self, run_id: str, scenarios: List[str]) -> None:
        LOGGER.info("Run %s dispatched %s scenario(s)", run_id, len(scenarios))
        if not self._slack_url:
            return
        names = "\n".join(Path(path).name for path in scenarios)
        self._notify_slack(
            slack_attachment(f"run {run_id} - started", f"{len(scenarios)} scenario(s):\n{names}", SLACK_COLOR_SUCCESS)
        )

    def run_completed(self, run_id: str) -> None:
        LOGGER.info("Run %s completed on all replicas", run_id)
        if not self._slack_url:
            return
        self._notify_slack(slack_attachment(f"run {run_id} - completed", "All scenarios reported.", SLACK_COLOR_SUCCESS))

    def _slack_payload(self, result: ScenarioResult) -> Dict[str, object]:
        name = Path(result.path).name
        maintainers = ", ".join(result.maintainers)
        if result.outcome is Outcome.cancelled:
            return slack_attachment(
                f"{name} - cancelled",
                f"{CANCELLED_MESSAGE}\nMaintainers: {maintainers}",
                SLACK_COLOR_CANCELLED,
            )
        if result.outcome is Outcome.error:
            return slack_attachment(
                f"{name} - failure",
                f"Maintainers: {maintainers}\n{result.summary}",
                SLACK_COLOR_FAILURE,
            )
        return slack_attachment(
            f"{name} - success",
            f"All tests passed!\nMaintainers: {maintainers}",
            SLACK_COLOR_SUCCESS,
        )

    def report_message(self, result: ScenarioResult, metadata: Mapping[str, Any], run_id: str = "") -> ReportMessage:
        data = ""
        if result.outcome is Outcome.cancelled:
            data = CANCELLED_MESSAGE
        elif result.outcome is Outcome.error:
            data = result.summary
        metadata_run_id = metadata.get("id")
        resolved_run_id = metadata_run_id if isinstance(metadata_run_id, str) and metadata_run_id else run_id
        if not resolved_run_id:
            LOGGER.warning("run_id not found in metadata for scenario %s", result.path)
        return ReportMessage(
            scenario=result.path,
            attributes=report_attributes(self._attributes, metadata),
            status=result.outcome,
            data=data,
            message_id=message_id(),
            run_id=resolved_run_id or "",
        )

    def _notify_slack(self, payload: Dict[str, object]) -> None:
        try:
            self._webhook.post(self._slack_url, payload)
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as exc:
            LOGGER.warning("Notify (slack) failed: %s", exc)

    def _publish(self, message: ReportMessage) -> None:
        try:
            self._channel.publish(message.message_id, message.model_dump_json().encode("utf-8"))
        except TransportError as exc:
            LOGGER.warning("Publish (report) failed for %s: %s", message.scenario, exc)
