from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional

LOGGER = logging.getLogger("oops.cancellation")


class CancellationToken:
    """Cooperative cancellation flag polled at execution checkpoints."""

    def __init__(self, key: Optional[str] = None) -> None:
        self.key = key
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


def cancellation_key(metadata: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Derive the logical key for a run; a pull request number wins over a branch name."""
    if not metadata:
        return None
    pr_number = metadata.get("pr_number")
    if isinstance(pr_number, int) and not isinstance(pr_number, bool):
        pr_number = str(pr_number)
    if isinstance(pr_number, str) and pr_number.strip():
        return f"pr_{pr_number.strip()}"
    branch = metadata.get("branch")
    if isinstance(branch, str) and branch.strip():
        return f"branch_{branch.strip()}"
    return None


class CancellationRegistry:
    """Process-local map from logical key to the token of the execution running under it.

    All access goes through the methods below, each holding the registry lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: Dict[str, CancellationToken] = {}

    @contextmanager
    def register(self, key: Optional[str]) -> Iterator[CancellationToken]:
        """Register a fresh token under ``key`` for the duration of the block.

        A ``None`` key yields an unregistered token that can never be cancelled externally.
        The entry is removed on every exit path, but only if it still belongs to this block.
        """
        token = CancellationToken(key)
        if key is None:
            yield token
            return
        with self._lock:
            previous = self._tokens.get(key)
            self._tokens[key] = token
        if previous is not None:
            LOGGER.warning("Replacing cancellation registration for %s", key)
        LOGGER.info("Registered test for cancellation: %s", key)
        try:
            yield token
        finally:
            with self._lock:
                if self._tokens.get(key) is token:
                    del self._tokens[key]
            LOGGER.debug("Deregistered cancellation key %s", key)

    def cancel(self, key: str) -> bool:
        """Trigger the token registered under ``key``; returns False when nothing is running."""
        with self._lock:
            token = self._tokens.get(key)
        if token is None:
            LOGGER.info("No running test registered for %s on this replica", key)
            return False
        token.cancel()
        LOGGER.info("Cancellation requested for %s", key)
        return True

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._tokens)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._tokens
