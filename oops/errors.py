from __future__ import annotations

from typing import Optional


class OopsError(Exception):
    """Base class for errors raised by the runner."""


class ConfigurationError(OopsError):
    """Startup configuration is unusable; the process should not continue."""


class CommandError(OopsError):
    """An inbound command payload could not be decoded."""


class TransportError(OopsError):
    """Publishing or notifying through an external channel failed."""


class ScriptError(OopsError):
    def __init__(self, message: str, *, exit_code: Optional[int] = None, output: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output

    def __str__(self) -> str:
        base = super().__str__()
        if self.output:
            return f"{base}: {self.output.strip()}"
        return base


class StepError(OopsError):
    """A failure bound to one field of one scenario stage.

    ``index`` is the run step position, or ``None`` for the prepare and check stages.
    """

    def __init__(self, field: str, message: str, *, index: Optional[int] = None) -> None:
        super().__init__(message)
        self.field = field
        self.index = index

    def __str__(self) -> str:
        location = self.field if self.index is None else f"{self.field}[{self.index}]"
        return f"{location}: {super().__str__()}"
