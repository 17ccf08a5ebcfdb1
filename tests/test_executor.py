from __future__ import annotations

import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Mapping, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import pytest
import yaml

from oops.schemas import Outcome
from oops.services.cancellation import CancellationToken
from oops.services.executor import ScenarioExecutor, ScenarioResult


class RecordingHandler(BaseHTTPRequestHandler):
    requests: List[Dict[str, Any]] = []
    on_request: Optional[Callable[[str], None]] = None

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002 - signature fixed by base class
        return None

    def _write(self, status: int, payload: object) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _record(self) -> Dict[str, Any]:
        length = int(self.headers.get("Content-Length", "0"))
        body = self.rfile.read(length).decode("utf-8") if length else ""
        parsed = urlparse(self.path)
        entry = {
            "method": self.command,
            "path": parsed.path,
            "query": {k: v[0] for k, v in parse_qs(parsed.query).items()},
            "headers": {k: v for k, v in self.headers.items()},
            "body": body,
        }
        self.__class__.requests.append(entry)
        callback = self.__class__.on_request
        if callback is not None:
            callback(parsed.path)
        return entry

    def _dispatch(self) -> None:
        entry = self._record()
        if entry["path"] == "/missing":
            self._write(404, {"error": "not found"})
        elif entry["path"] == "/item":
            self._write(200, {"name": "oops", "count": 1})
        else:
            self._write(200, {"echo": entry})

    def do_GET(self) -> None:  # noqa: N802 - mandated by BaseHTTPRequestHandler
        self._dispatch()

    def do_POST(self) -> None:  # noqa: N802 - mandated by BaseHTTPRequestHandler
        self._dispatch()


@pytest.fixture
def server() -> Generator[Tuple[str, type], None, None]:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    handler = type("Handler", (RecordingHandler,), {"requests": [], "on_request": None})
    httpd = ThreadingHTTPServer(("127.0.0.1", port), handler)
    httpd.daemon_threads = True
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{port}", handler
    finally:
        httpd.shutdown()
        httpd.server_close()


def _scenario(tmp_path: Path, document: Mapping[str, Any], name: str = "scenario.yaml") -> str:
    path = tmp_path / name
    path.write_text(yaml.safe_dump(dict(document)), encoding="utf-8")
    return str(path)


def _run(path: str, token: Optional[CancellationToken] = None, **kwargs: Any) -> ScenarioResult:
    executor = ScenarioExecutor(**kwargs)
    result = executor.execute_file(path, token=token or CancellationToken())
    assert result is not None
    return result


@pytest.mark.integration
def test_status_mismatch_is_one_error(tmp_path: Path, server: Tuple[str, type]) -> None:
    base, _handler = server
    path = _scenario(
        tmp_path,
        {"run": [{"http": {"method": "GET", "url": f"{base}/missing", "asserts": {"status_code": 200}}}]},
    )

    result = _run(path)

    assert result.outcome is Outcome.error
    assert len(result.errors) == 1
    assert result.errors[0].field == "asserts.status_code"
    assert result.errors[0].index == 0
    assert "expected 200, got 404" in str(result.errors[0])


@pytest.mark.integration
def test_header_script_output_replaces_value(tmp_path: Path, server: Tuple[str, type]) -> None:
    base, handler = server
    path = _scenario(
        tmp_path,
        {
            "run": [
                {
                    "http": {
                        "method": "GET",
                        "url": f"{base}/headers",
                        "headers": {"X-Token": "#!/bin/sh\necho hello", "X-Plain": "static"},
                        "asserts": {"status_code": 200},
                    }
                }
            ]
        },
    )

    result = _run(path)

    assert result.outcome is Outcome.success
    assert handler.requests[0]["headers"]["X-Token"] == "hello"
    assert handler.requests[0]["headers"]["X-Plain"] == "static"


@pytest.mark.integration
def test_url_query_payload_and_forms_are_sent(tmp_path: Path, server: Tuple[str, type]) -> None:
    base, handler = server
    path = _scenario(
        tmp_path,
        {
            "env": {"TARGET": base},
            "run": [
                {
                    "http": {
                        "method": "POST",
                        "url": "#!/bin/sh\necho $TARGET/things",
                        "query_params": {"page": "2"},
                        "payload": '{"hello": "world"}',
                    }
                },
                {"http": {"method": "POST", "url": f"{base}/form", "forms": {"name": "oops"}}},
            ],
        },
    )

    result = _run(path)

    assert result.outcome is Outcome.success
    first, second = handler.requests
    assert first["path"] == "/things"
    assert first["query"] == {"page": "2"}
    assert json.loads(first["body"]) == {"hello": "world"}
    assert second["body"] == "name=oops"


@pytest.mark.integration
def test_json_schema_validation(tmp_path: Path, server: Tuple[str, type]) -> None:
    base, _handler = server
    schema_file = tmp_path / "item.schema.json"
    schema_file.write_text(
        json.dumps({"type": "object", "required": ["name"], "properties": {"name": {"type": "string"}}}),
        encoding="utf-8",
    )
    strict = json.dumps({"type": "object", "required": ["missing_field"]})
    path = _scenario(
        tmp_path,
        {
            "run": [
                {"http": {"url": f"{base}/item", "asserts": {"status_code": 200, "validate_json": "item.schema.json"}}},
                {"http": {"url": f"{base}/item", "asserts": {"validate_json": strict}}},
            ]
        },
    )

    result = _run(path)

    assert result.outcome is Outcome.error
    assert [(error.index, error.field) for error in result.errors] == [(1, "asserts.validate_json")]


@pytest.mark.integration
def test_failures_are_collected_without_aborting(tmp_path: Path, server: Tuple[str, type]) -> None:
    base, handler = server
    marker = tmp_path / "checked"
    path = _scenario(
        tmp_path,
        {
            "prepare": "#!/bin/sh\nexit 1\n",
            "run": [
                {"http": {"url": "not a url"}},
                {"http": {"url": f"{base}/item", "asserts": {"status_code": 200, "script": "#!/bin/sh\nexit 2\n"}}},
                {"http": {"url": f"{base}/item", "asserts": {"status_code": 200}}},
            ],
            "check": f"#!/bin/sh\ntouch {marker}\n",
        },
    )

    result = _run(path)

    assert result.outcome is Outcome.error
    assert [(error.field, error.index) for error in result.errors] == [
        ("prepare", None),
        ("request", 0),
        ("asserts.script", 1),
    ]
    assert len(handler.requests) == 2
    assert result.steps_completed == 3
    assert marker.exists()


@pytest.mark.integration
def test_response_out_persists_body(tmp_path: Path, server: Tuple[str, type]) -> None:
    base, _handler = server
    out = tmp_path / "response.json"
    path = _scenario(tmp_path, {"run": [{"http": {"url": f"{base}/item", "response_out": str(out)}}]})

    result = _run(path)

    assert result.outcome is Outcome.success
    assert json.loads(out.read_text(encoding="utf-8")) == {"name": "oops", "count": 1}


@pytest.mark.integration
def test_cancellation_mid_run_skips_remaining_stages(tmp_path: Path, server: Tuple[str, type]) -> None:
    base, handler = server
    marker = tmp_path / "checked"
    token = CancellationToken("pr_1")
    handler.on_request = staticmethod(lambda _path: token.cancel())
    path = _scenario(
        tmp_path,
        {
            "run": [
                {"http": {"url": f"{base}/item", "asserts": {"status_code": 200}}},
                {"http": {"url": f"{base}/item", "asserts": {"status_code": 200}}},
            ],
            "check": f"#!/bin/sh\ntouch {marker}\n",
        },
    )

    result = _run(path, token=token)

    assert result.outcome is Outcome.cancelled
    assert result.steps_completed == 1
    assert len(handler.requests) == 1
    assert not marker.exists()


@pytest.mark.unit
def test_cancelled_batch_reports_every_scenario_cancelled(tmp_path: Path) -> None:
    first = _scenario(tmp_path, {"maintainers": ["a"], "run": [{"http": {"url": "http://127.0.0.1:1/x"}}]}, "a.yaml")
    second = _scenario(tmp_path, {"run": [{"http": {"url": "http://127.0.0.1:1/y"}}]}, "b.yaml")
    reported: List[Tuple[str, Outcome, str]] = []
    executor = ScenarioExecutor(report=lambda result, _metadata, run_id: reported.append((Path(result.path).name, result.outcome, run_id)))
    token = CancellationToken("pr_2")
    token.cancel()

    results = executor.execute([first, second], token=token, metadata={"pr_number": "2"}, run_id="run-9")

    assert [result.outcome for result in results] == [Outcome.cancelled, Outcome.cancelled]
    assert reported == [("a.yaml", Outcome.cancelled, "run-9"), ("b.yaml", Outcome.cancelled, "run-9")]
    assert results[0].maintainers == ["a"]
    assert all(not result.errors for result in results)


@pytest.mark.unit
def test_unreadable_files_are_skipped_and_tagged_files_still_run(tmp_path: Path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("run: [unclosed", encoding="utf-8")
    tagged = _scenario(tmp_path, {"tags": {"env": "prod"}, "run": []}, "prod.yaml")
    executor = ScenarioExecutor()

    results = executor.execute([str(broken), tagged, str(tmp_path / "gone.yaml")], token=CancellationToken())

    assert [(Path(result.path).name, result.outcome) for result in results] == [("prod.yaml", Outcome.success)]


@pytest.mark.integration
def test_header_that_cannot_be_sent_is_a_step_error(tmp_path: Path, server: Tuple[str, type]) -> None:
    base, handler = server
    reported: List[ScenarioResult] = []
    path = _scenario(
        tmp_path,
        {
            "run": [
                {"http": {"url": f"{base}/item", "headers": {"X-Name": "caf€"}}},
                {"http": {"url": f"{base}/item", "asserts": {"status_code": 200}}},
            ]
        },
    )
    executor = ScenarioExecutor(report=lambda result, _metadata, _run_id: reported.append(result))

    results = executor.execute([path], token=CancellationToken())

    assert [result.outcome for result in reported] == [Outcome.error]
    assert [(error.field, error.index) for error in results[0].errors] == [("run", 0)]
    assert "UnicodeEncodeError" in str(results[0].errors[0])
    assert results[0].steps_completed == 2
    assert len(handler.requests) == 1


@pytest.mark.integration
def test_unresolvable_schema_reference_is_a_step_error(tmp_path: Path, server: Tuple[str, type]) -> None:
    base, _handler = server
    schema = json.dumps({"$ref": "#/definitions/missing"})
    path = _scenario(tmp_path, {"run": [{"http": {"url": f"{base}/item", "asserts": {"validate_json": schema}}}]})

    result = _run(path)

    assert result.outcome is Outcome.error
    assert [(error.field, error.index) for error in result.errors] == [("asserts.validate_json", 0)]
    assert "unresolvable schema reference" in str(result.errors[0])
