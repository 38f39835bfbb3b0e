"""Streaming message schema exchanged with the host."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import Field

from ..errors import FailureKind
from .typed_data import TypedData, WireModel


class Direction(StrEnum):
    IN = "in"
    OUT = "out"
    INOUT = "inout"


class InvocationStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class LogLevel(StrEnum):
    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


RETURN_BINDING_NAME = "$return"


class StatusResult(WireModel):
    status: Literal["success", "failure"] = "success"
    message: str = ""
    stack_trace: str | None = None


class BindingInfo(WireModel):
    """Declared binding metadata: ``type`` is the transport type of the value."""

    type: str
    direction: Direction = Direction.IN
    binding_type: str = ""


class FunctionMetadata(WireModel):
    name: str
    directory: str = ""
    script_file: str = ""
    entry_point: str = ""
    bindings: dict[str, BindingInfo] = {}


class ParameterBinding(WireModel):
    name: str
    data: TypedData


class FailureDetail(WireModel):
    kind: FailureKind
    message: str
    parameter: str | None = None
    stack_trace: str | None = None


class StartStream(WireModel):
    kind: Literal["start_stream"] = "start_stream"
    worker_id: str


class WorkerInitRequest(WireModel):
    kind: Literal["worker_init_request"] = "worker_init_request"
    host_version: str = ""
    capabilities: dict[str, str] = {}
    function_app_directory: str | None = None


class WorkerInitResponse(WireModel):
    kind: Literal["worker_init_response"] = "worker_init_response"
    worker_version: str
    capabilities: dict[str, str] = {}
    result: StatusResult = StatusResult()


class FunctionLoadRequest(WireModel):
    kind: Literal["function_load_request"] = "function_load_request"
    function_id: str
    metadata: FunctionMetadata


class FunctionLoadResponse(WireModel):
    kind: Literal["function_load_response"] = "function_load_response"
    function_id: str
    result: StatusResult


class InvocationRequest(WireModel):
    kind: Literal["invocation_request"] = "invocation_request"
    invocation_id: str
    function_id: str
    input_data: list[ParameterBinding] = []
    trigger_metadata: dict[str, TypedData] = {}
    trace_context: dict[str, str] = {}
    deadline_ms: int | None = None


class InvocationResponse(WireModel):
    kind: Literal["invocation_response"] = "invocation_response"
    invocation_id: str
    status: InvocationStatus
    return_value: TypedData | None = None
    output_data: list[ParameterBinding] = []
    failure: FailureDetail | None = None


class InvocationCancel(WireModel):
    kind: Literal["invocation_cancel"] = "invocation_cancel"
    invocation_id: str
    grace_period_ms: int | None = None


class WorkerStatusRequest(WireModel):
    kind: Literal["worker_status_request"] = "worker_status_request"


class WorkerStatusResponse(WireModel):
    kind: Literal["worker_status_response"] = "worker_status_response"
    healthy: bool = True
    reason: str | None = None


class WorkerTerminate(WireModel):
    kind: Literal["worker_terminate"] = "worker_terminate"
    grace_period_ms: int | None = None


class RpcLog(WireModel):
    kind: Literal["rpc_log"] = "rpc_log"
    invocation_id: str | None = None
    category: str = ""
    level: LogLevel = LogLevel.INFO
    message: str
    exception: str | None = None


MessageContent = Annotated[
    StartStream
    | WorkerInitRequest
    | WorkerInitResponse
    | FunctionLoadRequest
    | FunctionLoadResponse
    | InvocationRequest
    | InvocationResponse
    | InvocationCancel
    | WorkerStatusRequest
    | WorkerStatusResponse
    | WorkerTerminate
    | RpcLog,
    Field(discriminator="kind"),
]


class StreamingMessage(WireModel):
    """One frame on the stream."""

    request_id: str = ""
    content: MessageContent
