"""
Execution context handed to command handlers.

Handlers never touch the event loop clock, subprocesses or the filesystem
directly; they go through the context so that the dispatcher can collect
partial output on timeout and tests can substitute fakes.
"""
import asyncio
import codecs
import json
import logging
import os
import re
import signal
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ..config import settings
from ..exceptions import TransportClosedError
from ..schemas.envelope import Envelope, EnvelopeType

logger = logging.getLogger("vps-agent.handlers.context")

OutputCallback = Callable[[str], Awaitable[None]]

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


class OutputCapture:
    """Accumulates decoded stdout/stderr of one process, capped at max_bytes per stream."""

    def __init__(self, max_bytes: Optional[int] = None):
        self.max_bytes = max_bytes or settings.MAX_OUTPUT_BYTES
        self._stdout: List[str] = []
        self._stderr: List[str] = []
        self._sizes = {"stdout": 0, "stderr": 0}
        self.truncated = False

    def append(self, stream: str, text: str) -> None:
        used = self._sizes[stream]
        if used >= self.max_bytes:
            self.truncated = True
            return
        encoded = text.encode("utf-8")
        if used + len(encoded) > self.max_bytes:
            text = encoded[: self.max_bytes - used].decode("utf-8", errors="ignore")
            self.truncated = True
        self._sizes[stream] += len(text.encode("utf-8"))
        (self._stdout if stream == "stdout" else self._stderr).append(text)

    @property
    def stdout(self) -> str:
        return "".join(self._stdout)

    @property
    def stderr(self) -> str:
        return "".join(self._stderr)


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str


class ProcessRunner:
    """
    Runs subprocesses in their own process group.
    If the awaiting task is cancelled (budget exceeded, connection dropped,
    shutdown), the whole group is killed before the cancellation propagates.
    """

    async def run(
        self,
        args: Sequence[str],
        capture: OutputCapture,
        env: Optional[Dict[str, str]] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ProcessResult:
        logger.debug(f"Spawning: {args[0]}")
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            start_new_session=True,
        )
        try:
            await asyncio.gather(
                self._pump(proc.stdout, "stdout", capture, on_output),
                self._pump(proc.stderr, "stderr", capture, None),
            )
            returncode = await proc.wait()
        except BaseException:
            self._kill(proc)
            await proc.wait()
            raise
        return ProcessResult(returncode=returncode, stdout=capture.stdout, stderr=capture.stderr)

    @staticmethod
    async def _pump(
        stream: Optional[asyncio.StreamReader],
        name: str,
        capture: OutputCapture,
        on_output: Optional[OutputCallback],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                tail = decoder.decode(b"", final=True)
                if tail:
                    capture.append(name, tail)
                return
            text = decoder.decode(chunk)
            if not text:
                continue
            capture.append(name, text)
            if on_output is not None:
                await on_output(text)

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            logger.warning(f"Killed process group {proc.pid}")
        except ProcessLookupError:
            pass
        except OSError:
            proc.kill()


class LocalFilesystem:
    """The filesystem operations handlers need."""

    def __init__(self, temp_dir: Optional[Union[str, Path]] = None):
        self.temp_dir = str(temp_dir) if temp_dir else settings.SCRIPT_TEMP_DIR

    @contextmanager
    def temp_script(self, prefix: str, content: str) -> Iterator[Path]:
        """
        Persist `content` to a uniquely named executable file and remove it
        when the block exits, however it exits.
        """
        safe_prefix = _UNSAFE_NAME_CHARS.sub("_", prefix)
        fd, name = tempfile.mkstemp(prefix=safe_prefix, suffix=".sh", dir=self.temp_dir)
        path = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(path, 0o755)
            logger.debug(f"Script written to {path}")
            yield path
        finally:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove temporary script {path}: {e}")

    def write_json(self, path: Union[str, Path], data: Dict[str, Any]) -> None:
        """Write JSON atomically, creating the parent directory if needed."""
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(f".{target.name}.tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, target)


@dataclass
class ExecutionContext:
    """
    Shared resources plus the per-command identity. The Session builds one
    base context; the dispatcher derives a fresh copy per command.
    """
    runner: ProcessRunner = field(default_factory=ProcessRunner)
    fs: LocalFilesystem = field(default_factory=LocalFilesystem)
    clock: Callable[[], float] = time.monotonic
    emit: Optional[Callable[[Envelope], Awaitable[None]]] = None
    schedule_exit: Optional[Callable[[float], None]] = None
    service_changed: Optional[Callable[[], None]] = None
    request_id: Optional[str] = None
    kind: Optional[str] = None
    captures: List[OutputCapture] = field(default_factory=list)

    def for_command(self, request_id: str, kind: str) -> "ExecutionContext":
        return replace(self, request_id=request_id, kind=kind, captures=[])

    async def run_process(
        self,
        args: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ProcessResult:
        capture = OutputCapture()
        self.captures.append(capture)
        return await self.runner.run(args, capture, env=env, on_output=on_output)

    def partial_output(self) -> Tuple[str, str]:
        """Everything captured so far across this command's processes."""
        return (
            "".join(c.stdout for c in self.captures),
            "".join(c.stderr for c in self.captures),
        )

    async def report_progress(self, step: str, message: str, progress: int, status: str = "running") -> None:
        """Send an advisory install_progress envelope. Never raises on a dead connection."""
        if self.emit is None:
            return
        envelope = Envelope(
            type=EnvelopeType.INSTALL_PROGRESS,
            request_id=self.request_id,
            payload={
                "step": step,
                "message": message,
                "progress": max(0, min(100, int(progress))),
                "status": status,
            },
        )
        try:
            await self.emit(envelope)
        except TransportClosedError:
            logger.debug(f"Progress '{step}' for {self.request_id} dropped: connection closed")
