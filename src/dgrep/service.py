"""Target-side grep execution."""

from __future__ import annotations

import asyncio
import logging
import socket

from dgrep.models import UNKNOWN_HOST, ErrorKind
from dgrep.protocol import MAX_FRAME_BYTES, ExecutionReply, ExecutionRequest, ReplyError

logger = logging.getLogger(__name__)

# grep's exit status when nothing matched
NO_MATCH_STATUS = 1

# JSON escaping can grow a payload up to sixfold; keep the reply inside one frame
MAX_OUTPUT_BYTES = MAX_FRAME_BYTES // 8
MAX_STDERR_BYTES = 4096
READ_CHUNK_BYTES = 64 * 1024


def resolve_hostname() -> str:
    try:
        return socket.gethostname() or UNKNOWN_HOST
    except OSError:
        return UNKNOWN_HOST


class RemoteGrep:
    """Runs grep against a local file on behalf of a coordinator.

    Every call ends in a reply. Exit status 0 and the no-match status are
    successes; any other status is a command error that still carries
    whatever output grep produced. A file that cannot be opened is reported
    as a resource error before grep is started.
    """

    def __init__(
        self,
        default_path: str = "",
        grep_binary: str = "grep",
        command_timeout: float | None = None,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ):
        self.default_path = default_path
        self.grep_binary = grep_binary
        self.command_timeout = command_timeout
        self.max_output_bytes = max_output_bytes

    async def grep(self, request: ExecutionRequest) -> ExecutionReply:
        hostname = resolve_hostname()
        path = request.path or self.default_path

        if not path:
            return self._fail(hostname, ErrorKind.RESOURCE, "no file path given")

        try:
            source = open(path, "rb")
        except OSError as e:
            logger.warning("Failed to open file '%s': %s", path, e)
            return self._fail(hostname, ErrorKind.RESOURCE, f"failed to open file: {e}")

        with source:
            args = [*request.options, "-e", request.pattern]
            try:
                proc = await asyncio.create_subprocess_exec(
                    self.grep_binary,
                    *args,
                    stdin=source,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                logger.warning("Failed to start %s: %s", self.grep_binary, e)
                return self._fail(
                    hostname, ErrorKind.COMMAND, f"failed to start grep command: {e}"
                )

            try:
                stdout, stderr, truncated = await asyncio.wait_for(
                    self._collect(proc), timeout=self.command_timeout
                )
            except TimeoutError:
                await _kill(proc)
                logger.warning("grep on '%s' exceeded %ss", path, self.command_timeout)
                return self._fail(
                    hostname,
                    ErrorKind.COMMAND,
                    f"grep command timed out after {self.command_timeout}s",
                )
            except asyncio.CancelledError:
                await _kill(proc)
                raise

        output = stdout.decode("utf-8", errors="replace")
        status = proc.returncode

        if truncated:
            logger.warning(
                "grep output on '%s' exceeded %d bytes", path, self.max_output_bytes
            )
            return self._fail(
                hostname,
                ErrorKind.COMMAND,
                f"output truncated at {self.max_output_bytes} bytes",
                output,
            )

        if status in (0, NO_MATCH_STATUS):
            return ExecutionReply(hostname=hostname, output=output)

        detail = stderr.decode("utf-8", errors="replace").strip()
        if status is not None and status < 0:
            message = f"grep command killed by signal {-status}"
        else:
            message = f"grep command failed: exit status {status}"
        if detail:
            message = f"{message}: {detail}"

        logger.info("Command finished with unexpected status %s on '%s'", status, path)
        return self._fail(hostname, ErrorKind.COMMAND, message, output)

    async def _collect(
        self, proc: asyncio.subprocess.Process
    ) -> tuple[bytes, bytes, bool]:
        """Read grep's output to the end, stopping early at the size cap.

        On overflow grep is killed and the output is cut back to the last
        complete line.
        """
        stderr_task = asyncio.ensure_future(_drain(proc.stderr, MAX_STDERR_BYTES))
        try:
            chunks: list[bytes] = []
            size = 0
            truncated = False
            while True:
                chunk = await proc.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                if size + len(chunk) > self.max_output_bytes:
                    chunks.append(chunk[: self.max_output_bytes - size])
                    truncated = True
                    break
                chunks.append(chunk)
                size += len(chunk)

            stdout = b"".join(chunks)
            if truncated:
                stdout = stdout[: stdout.rfind(b"\n") + 1]
                await _kill(proc)

            stderr = await stderr_task
            await proc.wait()
            return stdout, stderr, truncated
        finally:
            if not stderr_task.done():
                stderr_task.cancel()

    @staticmethod
    def _fail(
        hostname: str, kind: ErrorKind, message: str, output: str = ""
    ) -> ExecutionReply:
        return ExecutionReply(
            hostname=hostname,
            output=output,
            error=ReplyError(kind=kind, message=message),
        )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def _drain(stream: asyncio.StreamReader, keep: int) -> bytes:
    """Read a stream to its end, keeping at most ``keep`` bytes."""
    kept = b""
    while True:
        chunk = await stream.read(READ_CHUNK_BYTES)
        if not chunk:
            return kept
        if len(kept) < keep:
            kept += chunk[: keep - len(kept)]
