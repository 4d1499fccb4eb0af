"""Wire protocol shared by the coordinator and the execution service.

Each frame is one JSON document terminated by a newline. A request names a
method and carries grep parameters; a response carries either a reply or a
transport-level error. Command and resource failures travel inside the reply
so that partial output reaches the coordinator.
"""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from dgrep.models import ErrorKind

GREP_METHOD = "RemoteGrep.Grep"
# Accepted spellings of the grep call
GREP_METHODS = frozenset({GREP_METHOD, "RemoteQuery.Grep", "Grep"})

MAX_FRAME_BYTES = 16 * 1024 * 1024


class ProtocolError(Exception):
    """A frame could not be read, parsed or matched to its request."""


class ExecutionRequest(BaseModel):
    """What to search for, where, and with which grep options."""

    model_config = ConfigDict(frozen=True)

    pattern: str
    path: str = ""
    options: tuple[str, ...] = ()

    @field_validator("options")
    @classmethod
    def _options_are_flags(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for option in value:
            if not option.startswith("-") or option == "-":
                raise ValueError(
                    f"grep option {option!r} must be a flag; attach values "
                    "as in -m5 or --max-count=5"
                )
        return value


class ReplyError(BaseModel):
    kind: ErrorKind
    message: str


class ExecutionReply(BaseModel):
    """Result of one grep call on a target."""

    hostname: str
    output: str = ""
    error: ReplyError | None = None


class RpcRequest(BaseModel):
    id: int
    method: str
    params: dict[str, Any]


class RpcResponse(BaseModel):
    id: int | None = None
    result: ExecutionReply | None = None
    error: ReplyError | None = None


async def write_frame(writer: asyncio.StreamWriter, message: BaseModel) -> None:
    """Serialize a message as one line and flush it."""
    writer.write(message.model_dump_json().encode("utf-8") + b"\n")
    await writer.drain()


async def read_frame(
    reader: asyncio.StreamReader, model: type[BaseModel], prefix: bytes = b""
) -> Any:
    """Read one frame and validate it as ``model``.

    ``prefix`` holds bytes of the frame already taken off the stream.
    Returns None on a clean end of stream.
    """
    try:
        line = prefix if prefix.endswith(b"\n") else prefix + await reader.readline()
    except ValueError as e:
        # StreamReader turns an overlong line into ValueError
        raise ProtocolError(f"frame too large: {e}") from e

    if not line:
        return None
    if not line.endswith(b"\n"):
        raise ProtocolError("connection closed mid-frame")

    try:
        return model.model_validate_json(line)
    except ValidationError as e:
        raise ProtocolError(f"malformed {model.__name__} frame: {e}") from e


async def call_grep(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    request: ExecutionRequest,
    call_id: int = 1,
) -> RpcResponse:
    """Issue one grep call on an open connection and wait for its response."""
    await write_frame(
        writer,
        RpcRequest(id=call_id, method=GREP_METHOD, params=request.model_dump(mode="json")),
    )

    response = await read_frame(reader, RpcResponse)
    if response is None:
        raise ProtocolError("connection closed before reply")
    if response.id != call_id:
        raise ProtocolError(f"reply id {response.id} does not match call id {call_id}")
    if response.result is None and response.error is None:
        raise ProtocolError("reply carries neither result nor error")
    return response
