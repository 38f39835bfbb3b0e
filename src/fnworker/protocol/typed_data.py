"""Tagged values carried on the wire."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Tag, field_validator


class WireModel(BaseModel):
    """Base for every wire model: immutable, bytes travel as base64 in JSON."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")


class StringData(WireModel):
    kind: Literal["string"] = "string"
    value: str


class BytesData(WireModel):
    kind: Literal["bytes"] = "bytes"
    value: bytes


class IntData(WireModel):
    kind: Literal["int"] = "int"
    value: int


class DoubleData(WireModel):
    kind: Literal["double"] = "double"
    value: float


class JsonData(WireModel):
    """A JSON document kept as its serialized text."""

    kind: Literal["json"] = "json"
    value: str


class HttpData(WireModel):
    """An HTTP request (trigger) or response (output).

    ``headers`` holds one mapping per received header line.
    """

    kind: Literal["http"] = "http"
    method: str = "GET"
    url: str = ""
    headers: list[dict[str, str]] = []
    body: bytes = b""
    status_code: int | None = None

    @field_validator("headers", mode="before")
    @classmethod
    def _single_line(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return [value]
        return value


class QueueData(WireModel):
    kind: Literal["queue"] = "queue"
    id: str = ""
    body: bytes = b""
    dequeue_count: int = 0


class TimerData(WireModel):
    kind: Literal["timer"] = "timer"
    past_due: bool = False
    schedule_status: dict[str, Any] | None = None


class UnknownData(WireModel):
    """Any value whose kind this worker does not understand."""

    model_config = ConfigDict(frozen=True, extra="allow")

    kind: str


KNOWN_KINDS = frozenset({"string", "bytes", "int", "double", "json", "http", "queue", "timer"})


def _kind_tag(value: Any) -> str:
    kind = value.get("kind") if isinstance(value, dict) else getattr(value, "kind", None)
    return kind if kind in KNOWN_KINDS else "unknown"


TypedData = Annotated[
    Annotated[StringData, Tag("string")]
    | Annotated[BytesData, Tag("bytes")]
    | Annotated[IntData, Tag("int")]
    | Annotated[DoubleData, Tag("double")]
    | Annotated[JsonData, Tag("json")]
    | Annotated[HttpData, Tag("http")]
    | Annotated[QueueData, Tag("queue")]
    | Annotated[TimerData, Tag("timer")]
    | Annotated[UnknownData, Tag("unknown")],
    Discriminator(_kind_tag),
]
