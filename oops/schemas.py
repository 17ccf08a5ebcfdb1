from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from oops.errors import CommandError


def _stringify_mapping(value: Any) -> Any:
    """YAML happily yields ints and bools for map values; scenarios treat them as text."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): "" if v is None else str(v) for k, v in value.items()}
    return value


class StartCommand(BaseModel):
    """Fan a scenario set out to the fleet under one run id."""

    code: Literal["start"] = "start"
    id: str = ""
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("tags", mode="before")
    @classmethod
    def default_tags(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


class ProcessCommand(BaseModel):
    """Execute exactly one scenario file on behalf of run ``id``."""

    code: Literal["process"] = "process"
    id: str
    scenario: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


Command = Annotated[Union[StartCommand, ProcessCommand], Field(discriminator="code")]

_command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


def decode_command(data: Union[bytes, str]) -> Union[StartCommand, ProcessCommand]:
    try:
        return _command_adapter.validate_json(data)
    except ValidationError as exc:
        raise CommandError(f"invalid command payload: {exc}") from exc


def encode_command(command: Union[StartCommand, ProcessCommand]) -> bytes:
    return command.model_dump_json().encode("utf-8")


class CancelRequest(BaseModel):
    key: Optional[str] = None
    pr_number: Optional[str] = None
    branch: Optional[str] = None

    @field_validator("pr_number", mode="before")
    @classmethod
    def coerce_pr_number(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class Asserts(BaseModel):
    status_code: Optional[int] = None
    validate_json: Optional[str] = None
    script: Optional[str] = None

    model_config = {"frozen": True}


class HttpStep(BaseModel):
    method: str = "GET"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    query_params: Dict[str, str] = Field(default_factory=dict)
    files: Dict[str, str] = Field(default_factory=dict)
    forms: Dict[str, str] = Field(default_factory=dict)
    payload: Optional[str] = None
    response_out: Optional[str] = None
    asserts: Optional[Asserts] = None

    model_config = {"frozen": True}

    @field_validator("headers", "query_params", "files", "forms", mode="before")
    @classmethod
    def stringify_values(cls, value: Any) -> Any:
        return _stringify_mapping(value)

    @field_validator("method")
    @classmethod
    def normalize_method(cls, value: str) -> str:
        return value.strip().upper()


class RunStep(BaseModel):
    http: HttpStep

    model_config = {"frozen": True}


class ScenarioSpec(BaseModel):
    maintainers: List[str] = Field(default_factory=list)
    tags: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)
    prepare: Optional[str] = None
    run: List[RunStep] = Field(default_factory=list)
    check: Optional[str] = None

    model_config = {"frozen": True}

    @field_validator("tags", "env", mode="before")
    @classmethod
    def stringify_values(cls, value: Any) -> Any:
        return _stringify_mapping(value)

    @field_validator("maintainers", "run", mode="before")
    @classmethod
    def default_list(cls, value: Any) -> Any:
        return [] if value is None else value


class Outcome(str, Enum):
    success = "success"
    error = "error"
    cancelled = "cancelled"


class ReportMessage(BaseModel):
    scenario: str
    attributes: Dict[str, str] = Field(default_factory=dict)
    status: Outcome
    data: str = ""
    message_id: str
    run_id: str = ""


class CommandReceipt(BaseModel):
    accepted: bool
    detail: Optional[str] = None


class CancelResult(BaseModel):
    key: str
    cancelled: bool


class RunState(BaseModel):
    run_id: str
    remaining: Optional[int] = None
    tracker: str
