"""Base handle for CLI backends that stream line-delimited JSON on stdout."""

import asyncio
import json
import logging
from abc import abstractmethod
from typing import AsyncIterator, List, Optional

from .base import BackendHandle
from ..exceptions import BackendFatalError, BackendUnavailableError
from ..types import NativeEvent

logger = logging.getLogger(__name__)

STOP_GRACE_SECONDS = 5.0


def is_debug() -> bool:
    """Check if debug logging is enabled."""
    return logger.isEnabledFor(logging.DEBUG)


class SubprocessHandle(BackendHandle):
    """
    Runs one agent turn as a child process.

    The command is built by subclasses; stdout is decoded one JSON object per
    line, stderr is collected concurrently and reported when the process fails
    without having produced a terminal event.
    """

    def __init__(
        self,
        executable: str,
        workspace_path: str,
        prompt: str,
        resume_session_id: Optional[str] = None,
        model: Optional[str] = None,
    ):
        super().__init__(workspace_path, resume_session_id)
        self.executable = executable
        self.prompt = prompt
        self.resume_session_id = resume_session_id
        self.model = model
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stopped = False

    @abstractmethod
    def build_command(self) -> List[str]:
        """Full argv for this run."""

    def is_terminal_event(self, event: NativeEvent) -> bool:
        """True for events after which a non-zero exit is not a failure."""
        return event.get("type") == "result"

    def extract_session_id(self, event: NativeEvent) -> Optional[str]:
        session_id = event.get("session_id")
        return session_id if isinstance(session_id, str) and session_id else None

    async def events(self) -> AsyncIterator[NativeEvent]:
        cmd = self.build_command()
        logger.info(
            f"Starting {self.kind.value} in {self.workspace_path}"
            f" (resume: {self.resume_session_id or 'new session'})"
        )
        if is_debug():
            logger.debug(f"{self.kind.value.upper()} COMMAND: {' '.join(cmd)}")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.workspace_path,
            )
        except FileNotFoundError as e:
            self.mark_ended()
            raise BackendUnavailableError(self.kind.value, f"{self.executable} not found in PATH") from e

        process = self._process
        stderr_lines: List[str] = []

        async def capture_stderr() -> None:
            """Capture stderr lines as they arrive."""
            if process.stderr:
                async for line in process.stderr:
                    stderr_line = line.decode(errors="replace").strip()
                    if stderr_line:
                        stderr_lines.append(stderr_line)
                        if is_debug():
                            logger.debug(f"{self.kind.value.upper()} STDERR: {stderr_line}")

        stderr_task = asyncio.create_task(capture_stderr())
        got_terminal = False

        try:
            if process.stdout:
                async for raw in process.stdout:
                    line = raw.decode(errors="replace").strip()
                    if not line:
                        continue
                    if is_debug():
                        logger.debug(f"{self.kind.value.upper()} OUTPUT: {line}")

                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.warning(f"Failed to parse JSON from {self.kind.value}: {e}")
                        continue
                    if not isinstance(event, dict):
                        continue

                    session_id = self.extract_session_id(event)
                    if session_id and not self.has_established_session:
                        self.set_backend_session_id(session_id)
                    if self.is_terminal_event(event):
                        got_terminal = True
                    yield event

            return_code = await process.wait()
            await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            self.mark_ended()

        if self._stopped:
            return
        if return_code != 0 and not got_terminal:
            stderr_text = "\n".join(stderr_lines[-20:]) if stderr_lines else "no output"
            logger.error(f"{self.kind.value} exited with code {return_code}")
            for line in stderr_lines:
                logger.error(f"  {line}")
            raise BackendFatalError(
                f"{self.kind.value} exited with code {return_code}: {stderr_text}"
            )
        if return_code != 0:
            logger.warning(
                f"{self.kind.value} completed successfully but exited with code {return_code}"
            )

    async def stop(self) -> None:
        self._stopped = True
        self.mark_ended()
        process = self._process
        if process is None or process.returncode is not None:
            return

        logger.info(f"Stopping {self.kind.value} process {process.pid}")
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=STOP_GRACE_SECONDS)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            logger.warning(f"{self.kind.value} did not exit after SIGTERM, killing")
            process.kill()
            await process.wait()
