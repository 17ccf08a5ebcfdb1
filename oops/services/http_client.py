from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import requests

LOGGER = logging.getLogger("oops.http")


class RequestBuildError(ValueError):
    """The step's fields cannot be turned into an HTTP request."""


@dataclass
class HttpResponse:
    status_code: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text)


def validate_url(url: str) -> str:
    parsed = urlparse(url.strip())
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise RequestBuildError(f"invalid url {url!r}: expected http(s)://host[/path]")
    return url.strip()


class HttpClient:
    """Build and send the request described by one run step."""

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self._session = session or requests.Session()

    def build(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        query_params: Optional[Mapping[str, str]] = None,
        files: Optional[Mapping[str, str]] = None,
        forms: Optional[Mapping[str, str]] = None,
        payload: Optional[str] = None,
    ) -> requests.PreparedRequest:
        target = validate_url(url)
        file_parts: Dict[str, Any] = {}
        for name, location in (files or {}).items():
            path = Path(location)
            try:
                file_parts[name] = (path.name, path.read_bytes())
            except OSError as exc:
                raise RequestBuildError(f"cannot read file {location} for field {name}: {exc}") from exc
        data: Any = None
        if file_parts or forms:
            data = dict(forms or {})
            if payload:
                LOGGER.warning("payload ignored for %s %s: forms/files take precedence", method, target)
        elif payload:
            data = payload.encode("utf-8")
        request = requests.Request(
            method=method,
            url=target,
            headers=dict(headers or {}),
            params=dict(query_params or {}),
            files=file_parts or None,
            data=data,
        )
        try:
            return self._session.prepare_request(request)
        except (requests.RequestException, ValueError) as exc:
            raise RequestBuildError(f"cannot build request {method} {target}: {exc}") from exc

    def send(self, prepared: requests.PreparedRequest) -> HttpResponse:
        response = self._session.send(prepared, allow_redirects=True)
        return HttpResponse(
            status_code=response.status_code,
            body=response.content,
            headers=dict(response.headers),
        )

    def fetch(self, url: str) -> bytes:
        response = self._session.get(url)
        response.raise_for_status()
        return response.content

    def close(self) -> None:
        self._session.close()
