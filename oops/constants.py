from __future__ import annotations

SCENARIO_SUFFIXES = (".yaml", ".yml")

# Relative to the root directory; each match is walked for scenario files.
SCENARIO_DIR_PATTERNS = [
    "services/*/scenarios",
    "cloudrun/*/scenarios",
    "cronjobs/*/scenarios",
    "serverless/*/scenarios",
    "microapps/*/scenarios",
    "cmd/*/scenarios",
    "pkg/*/scenarios",
]

# Metadata fields that may name affected components.
AFFECTED_SERVICE_FIELDS = ["affected_services", "services", "changed_services", "components"]
ANALYSIS_FIELD = "test_analysis"

RUN_TRACKER_TTL_SECONDS = 6 * 60 * 60
RUN_TRACKER_KEY_FORMAT = "oops:run:{run_id}:remaining"

INTERPRETER_MARKER = "#!"
PYTHON_INTERPRETER_HINT = "python"

SLACK_FOOTER = "oops"
SLACK_COLOR_SUCCESS = "good"
SLACK_COLOR_FAILURE = "danger"
SLACK_COLOR_CANCELLED = "warning"

CANCELLED_MESSAGE = "Test execution was cancelled (PR closed)"

MESSAGE_ID_LENGTH = 10
