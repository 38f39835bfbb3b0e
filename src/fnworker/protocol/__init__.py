"""Wire protocol for the host stream."""

from .codec import HEADER, MAX_FRAME_SIZE, PROTOCOL_VERSION, decode_header, decode_payload, encode_frame
from .messages import (
    RETURN_BINDING_NAME,
    BindingInfo,
    Direction,
    FailureDetail,
    FunctionLoadRequest,
    FunctionLoadResponse,
    FunctionMetadata,
    InvocationCancel,
    InvocationRequest,
    InvocationResponse,
    InvocationStatus,
    LogLevel,
    MessageContent,
    ParameterBinding,
    RpcLog,
    StartStream,
    StatusResult,
    StreamingMessage,
    WorkerInitRequest,
    WorkerInitResponse,
    WorkerStatusRequest,
    WorkerStatusResponse,
    WorkerTerminate,
)
from .typed_data import (
    BytesData,
    DoubleData,
    HttpData,
    IntData,
    JsonData,
    QueueData,
    StringData,
    TimerData,
    TypedData,
    UnknownData,
)

__all__ = [
    "HEADER",
    "MAX_FRAME_SIZE",
    "PROTOCOL_VERSION",
    "RETURN_BINDING_NAME",
    "BindingInfo",
    "BytesData",
    "Direction",
    "DoubleData",
    "FailureDetail",
    "FunctionLoadRequest",
    "FunctionLoadResponse",
    "FunctionMetadata",
    "HttpData",
    "IntData",
    "InvocationCancel",
    "InvocationRequest",
    "InvocationResponse",
    "InvocationStatus",
    "JsonData",
    "LogLevel",
    "MessageContent",
    "ParameterBinding",
    "QueueData",
    "RpcLog",
    "StartStream",
    "StatusResult",
    "StreamingMessage",
    "StringData",
    "TimerData",
    "TypedData",
    "UnknownData",
    "WorkerInitRequest",
    "WorkerInitResponse",
    "WorkerStatusRequest",
    "WorkerStatusResponse",
    "WorkerTerminate",
    "decode_header",
    "decode_payload",
    "encode_frame",
]
