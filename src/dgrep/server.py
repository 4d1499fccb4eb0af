#!/usr/bin/env python3
"""Remote execution service: serves grep calls over TCP."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

from pydantic import ValidationError

from dgrep.log import configure_logging
from dgrep.models import ErrorKind
from dgrep.protocol import (
    GREP_METHODS,
    MAX_FRAME_BYTES,
    ExecutionRequest,
    ProtocolError,
    ReplyError,
    RpcRequest,
    RpcResponse,
    read_frame,
    write_frame,
)
from dgrep.service import MAX_OUTPUT_BYTES, RemoteGrep

logger = logging.getLogger(__name__)

DEFAULT_PORT = 1234
DEFAULT_MAX_CONNECTIONS = 64


def _transport_error(call_id: int | None, message: str) -> RpcResponse:
    return RpcResponse(
        id=call_id, error=ReplyError(kind=ErrorKind.TRANSPORT, message=message)
    )


class GrepServer:
    """Accepts connections and answers grep calls until the process ends.

    Each connection is handled by its own task; at most ``max_connections``
    are served at once. Connections over the cap are accepted and hold their
    socket while they wait for a free slot. A connection may carry several
    calls, answered in order; a call is cancelled if its peer hangs up.
    """

    def __init__(
        self,
        service: RemoteGrep,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
    ):
        self.service = service
        self.host = host
        self.port = port
        self._slots = asyncio.Semaphore(max_connections)
        self._server: asyncio.Server | None = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection, self.host, self.port, limit=MAX_FRAME_BYTES
        )
        # Pick up the real port when bound to port 0
        self.port = self._server.sockets[0].getsockname()[1]
        logger.info("Listening on %s:%d", self.host, self.port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        server = self._server
        if server is None:
            raise RuntimeError("server failed to start")
        async with server:
            await server.serve_forever()

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        peer = writer.get_extra_info("peername")
        async with self._slots:
            logger.debug("Connection from %s", peer)
            pending = b""
            try:
                while True:
                    try:
                        request = await read_frame(reader, RpcRequest, pending)
                    except ProtocolError as e:
                        logger.warning("Bad frame from %s: %s", peer, e)
                        await write_frame(writer, _transport_error(None, str(e)))
                        if reader.at_eof():
                            break
                        pending = b""
                        continue

                    if request is None:
                        break

                    response, pending = await self._answer_while_connected(
                        request, reader
                    )
                    if response is None:
                        logger.info("Peer %s left during call %s", peer, request.id)
                        break
                    await write_frame(writer, response)
            except (ConnectionError, asyncio.IncompleteReadError) as e:
                logger.debug("Connection from %s dropped: %s", peer, e)
            finally:
                writer.close()
                with contextlib.suppress(ConnectionError, OSError):
                    await writer.wait_closed()

    async def _answer_while_connected(
        self, request: RpcRequest, reader: asyncio.StreamReader
    ) -> tuple[RpcResponse | None, bytes]:
        """Run one call, cancelling it if the peer hangs up first.

        Returns the response (None when the peer left) and any byte read off
        the stream while watching, which starts the next frame.
        """
        call = asyncio.ensure_future(self.handle_call(request))
        watch = asyncio.ensure_future(reader.read(1))
        try:
            await asyncio.wait({call, watch}, return_when=asyncio.FIRST_COMPLETED)

            # The watch finished first: the peer either hung up or sent data early
            if not call.done() and (watch.exception() is not None or watch.result() == b""):
                call.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await call
                return None, b""

            response = await call
        finally:
            call.cancel()
            if not watch.done():
                watch.cancel()

        pending = b""
        if watch.done() and not watch.cancelled() and watch.exception() is None:
            pending = watch.result()
        return response, pending

    async def handle_call(self, request: RpcRequest) -> RpcResponse:
        """Answer one call; never raises for a bad or failing call."""
        if request.method not in GREP_METHODS:
            return _transport_error(request.id, f"unknown method {request.method!r}")

        try:
            params = ExecutionRequest.model_validate(request.params)
        except ValidationError as e:
            return _transport_error(request.id, f"invalid grep parameters: {e}")

        logger.info(
            "Grep pattern=%r path=%r options=%s",
            params.pattern,
            params.path or self.service.default_path,
            list(params.options),
        )
        try:
            reply = await self.service.grep(params)
        except Exception as e:
            logger.exception("Grep call %s failed unexpectedly", request.id)
            return _transport_error(request.id, f"internal error: {e}")

        return RpcResponse(id=request.id, result=reply)


def main() -> int:
    """Entry point for the execution service."""
    parser = argparse.ArgumentParser(
        description="Serve grep requests from a dgrep coordinator"
    )
    parser.add_argument("--host", default="0.0.0.0", help="Address to bind")
    parser.add_argument(
        "--port", type=int, default=DEFAULT_PORT, help=f"TCP port (default {DEFAULT_PORT})"
    )
    parser.add_argument(
        "--path", default="", help="File searched when a request names no path"
    )
    parser.add_argument("--grep", default="grep", help="grep binary to run")
    parser.add_argument(
        "--command-timeout",
        type=float,
        default=None,
        help="Kill grep after this many seconds",
    )
    parser.add_argument(
        "--max-output-bytes",
        type=int,
        default=MAX_OUTPUT_BYTES,
        help="Truncate grep output beyond this size",
    )
    parser.add_argument(
        "--max-connections",
        type=int,
        default=DEFAULT_MAX_CONNECTIONS,
        help="Connections served concurrently",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("DGREP_LOG_LEVEL", "INFO"),
        help="Logging level (default INFO)",
    )
    args = parser.parse_args()

    if args.max_connections < 1:
        parser.error("--max-connections must be at least 1")
    if not 0 < args.max_output_bytes <= MAX_OUTPUT_BYTES:
        parser.error(f"--max-output-bytes must be between 1 and {MAX_OUTPUT_BYTES}")

    configure_logging(args.log_level)

    service = RemoteGrep(
        default_path=args.path,
        grep_binary=args.grep,
        command_timeout=args.command_timeout,
        max_output_bytes=args.max_output_bytes,
    )
    server = GrepServer(
        service,
        host=args.host,
        port=args.port,
        max_connections=args.max_connections,
    )

    try:
        asyncio.run(server.serve_forever())
    except OSError as e:
        logger.error("listen error: %s", e)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
