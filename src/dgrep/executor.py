"""Fan-out dispatch of one grep request to many targets."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Sequence

from dgrep.models import (
    UNKNOWN_HOST,
    ErrorKind,
    NodeError,
    NodeResult,
    NodeStatus,
    Target,
)
from dgrep.protocol import (
    MAX_FRAME_BYTES,
    ExecutionRequest,
    ProtocolError,
    call_grep,
)

logger = logging.getLogger(__name__)

# Type aliases for progress callbacks
StatusCallback = Callable[[int, Target, NodeStatus], None]  # (index, target, status)
ResultCallback = Callable[[int, NodeResult], None]  # (index, result)


class Dispatcher:
    """Sends one request to every target concurrently.

    Each target gets its own task with its own dial and call timeouts, so a
    slow or dead target only costs its own budget. Results come back in
    target order whatever the completion order.
    """

    def __init__(
        self,
        on_status: StatusCallback | None = None,
        on_result: ResultCallback | None = None,
        max_concurrency: int | None = None,
    ):
        self.on_status = on_status
        self.on_result = on_result
        self.max_concurrency = max_concurrency

    def _emit_status(self, index: int, target: Target, status: NodeStatus) -> None:
        if self.on_status:
            self.on_status(index, target, status)

    async def dispatch(
        self,
        targets: Sequence[Target],
        request: ExecutionRequest,
        dial_timeout: float,
        call_timeout: float,
    ) -> list[NodeResult]:
        """Run ``request`` on all targets and wait for every one of them."""
        # One slot per target, written only by the task that owns the index
        results: list[NodeResult | None] = [None] * len(targets)
        limit = (
            asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
        )

        async def run(index: int, target: Target) -> None:
            if limit is None:
                result = await self._run_target(
                    index, target, request, dial_timeout, call_timeout
                )
            else:
                async with limit:
                    result = await self._run_target(
                        index, target, request, dial_timeout, call_timeout
                    )
            results[index] = result
            self._emit_status(
                index, target, NodeStatus.SUCCESS if result.ok else NodeStatus.FAILED
            )
            if self.on_result:
                self.on_result(index, result)

        for index, target in enumerate(targets):
            self._emit_status(index, target, NodeStatus.PENDING)

        await asyncio.gather(*(run(i, t) for i, t in enumerate(targets)))

        finished = [r for r in results if r is not None]
        if len(finished) != len(targets):
            raise RuntimeError("dispatch finished with unfilled result slots")
        return finished

    async def _run_target(
        self,
        index: int,
        target: Target,
        request: ExecutionRequest,
        dial_timeout: float,
        call_timeout: float,
    ) -> NodeResult:
        """Dial one target, make one call, and classify the outcome."""
        self._emit_status(index, target, NodeStatus.CONNECTING)

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(target.host, target.port, limit=MAX_FRAME_BYTES),
                timeout=dial_timeout,
            )
        except TimeoutError:
            return _unreachable(
                target, ErrorKind.NETWORK, f"connection timed out after {dial_timeout}s"
            )
        except (OSError, ValueError) as e:
            # ValueError covers hosts the IDNA codec cannot encode
            return _unreachable(target, ErrorKind.NETWORK, f"connection failed: {e}")

        self._emit_status(index, target, NodeStatus.RUNNING)

        try:
            # wait_for cancels the call on timeout; the finally block then
            # closes the socket so nothing is left reading in the background
            response = await asyncio.wait_for(
                call_grep(reader, writer, request), timeout=call_timeout
            )
        except TimeoutError:
            return _unreachable(
                target, ErrorKind.TRANSPORT, f"rpc call timed out after {call_timeout}s"
            )
        except (ProtocolError, OSError, asyncio.IncompleteReadError) as e:
            return _unreachable(target, ErrorKind.TRANSPORT, f"rpc call failed: {e}")
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

        reply = response.result
        if response.error is not None or reply is None:
            # The service answered, so the call reached it
            message = response.error.message if response.error else "reply carries no result"
            result = NodeResult(
                target=target,
                reachable=True,
                error=NodeError(ErrorKind.TRANSPORT, message),
            )
        else:
            error = None
            if reply.error is not None:
                error = NodeError(reply.error.kind, reply.error.message)
            result = NodeResult(
                target=target,
                reachable=True,
                hostname=reply.hostname,
                output=reply.output,
                error=error,
            )

        if result.error:
            logger.info("%s (%s): %s", target, result.hostname, result.error)
        else:
            logger.debug("%s (%s): %d lines", target, result.hostname, len(result.lines))
        return result


def _unreachable(target: Target, kind: ErrorKind, message: str) -> NodeResult:
    logger.info("%s unreachable: %s", target, message)
    return NodeResult(
        target=target,
        reachable=False,
        hostname=UNKNOWN_HOST,
        error=NodeError(kind, message),
    )


def run_dispatch(
    targets: Sequence[Target],
    request: ExecutionRequest,
    dial_timeout: float,
    call_timeout: float,
    max_concurrency: int | None = None,
) -> list[NodeResult]:
    """Blocking wrapper around :meth:`Dispatcher.dispatch`."""
    dispatcher = Dispatcher(max_concurrency=max_concurrency)
    return asyncio.run(
        dispatcher.dispatch(targets, request, dial_timeout, call_timeout)
    )
