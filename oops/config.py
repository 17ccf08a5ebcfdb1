"""
Runtime configuration for the scenario runner.

Every setting is read from the environment so the same image can run as the
dispatcher, as a worker replica, or as a one-shot local run. Values that the
process cannot work without are checked by ``Settings.validate``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from oops.errors import ConfigurationError


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _as_bool(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def _as_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


@dataclass
class Settings:
    scenario_files: List[str] = field(default_factory=list)
    scenario_dir: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    snssqs: Optional[str] = None
    pubsub: Optional[str] = None
    project_id: Optional[str] = None
    aws_region: Optional[str] = None
    aws_key: Optional[str] = None
    aws_secret: Optional[str] = None
    role_arn: Optional[str] = None

    slack_url: Optional[str] = None
    report_pubsub: Optional[str] = None

    redis_host: Optional[str] = None
    redis_password: Optional[str] = None
    redis_timeout_seconds: Optional[int] = None

    subscribe: bool = True
    verbose: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            scenario_files=_split_list(env.get("OOPS_SCENARIOS")),
            scenario_dir=env.get("OOPS_DIR") or None,
            tags=_split_list(env.get("OOPS_TAGS")),
            snssqs=env.get("OOPS_SNS_SQS") or None,
            pubsub=env.get("OOPS_PUBSUB") or None,
            project_id=env.get("OOPS_PROJECT_ID") or env.get("GOOGLE_CLOUD_PROJECT") or None,
            aws_region=env.get("AWS_REGION") or None,
            aws_key=env.get("AWS_ACCESS_KEY_ID") or None,
            aws_secret=env.get("AWS_SECRET_ACCESS_KEY") or None,
            role_arn=env.get("ROLE_ARN") or None,
            slack_url=env.get("OOPS_SLACK_URL") or None,
            report_pubsub=env.get("OOPS_REPORT_PUBSUB") or None,
            redis_host=env.get("REDIS_HOST") or None,
            redis_password=env.get("REDIS_PASSWORD") or None,
            redis_timeout_seconds=_as_int(env.get("REDIS_TIMEOUT_SECONDS")),
            subscribe=_as_bool(env.get("OOPS_SUBSCRIBE", "true")),
            verbose=_as_bool(env.get("OOPS_VERBOSE")),
            log_level=(env.get("OOPS_LOG_LEVEL") or "INFO").upper(),
        )

    def validate(self) -> "Settings":
        if self.snssqs and self.pubsub:
            raise ConfigurationError("Only one distribution channel may be set: OOPS_SNS_SQS or OOPS_PUBSUB.")
        if self.pubsub and not self.project_id:
            raise ConfigurationError("OOPS_PUBSUB requires OOPS_PROJECT_ID (or GOOGLE_CLOUD_PROJECT).")
        if self.report_pubsub and not self.project_id:
            raise ConfigurationError("OOPS_REPORT_PUBSUB requires OOPS_PROJECT_ID (or GOOGLE_CLOUD_PROJECT).")
        return self

    def distribution_attributes(self) -> dict:
        """Static distribution info attached to every report message."""
        attributes = {}
        if self.snssqs:
            attributes["snssqs"] = self.snssqs
        if self.pubsub:
            attributes["pubsub"] = self.pubsub
        return attributes
