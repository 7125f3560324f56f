"""Claude Agent SDK backend - uses subscription auth from ~/.claude/config."""

import asyncio
import logging
from typing import Any, AsyncIterator, List, Optional, TypeGuard

from claude_agent_sdk import (
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    CLINotFoundError,
)
from claude_agent_sdk.types import (
    AssistantMessage as SDKAssistantMessage,
    Message,
    ResultMessage as SDKResultMessage,
    SystemMessage,
    TextBlock as SDKTextBlock,
    ToolResultBlock as SDKToolResultBlock,
    ToolUseBlock as SDKToolUseBlock,
    UserMessage as SDKUserMessage,
)

from .base import BackendAdapter, BackendHandle
from .tools import safe_stringify, to_int
from ..exceptions import BackendFatalError, BackendUnavailableError
from ..models.messages import (
    PENDING_SESSION_ID,
    AssistantBlock,
    AssistantMessage,
    CanonicalMessage,
    ContentBlock,
    ResultMessage,
    SystemInitMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
    UserMessage,
)
from ..models.session import BackendKind

logger = logging.getLogger(__name__)

LOG_TRUNCATE_LENGTH = 100
ERROR_SUBTYPES = ("error_during_execution", "error_max_turns")


def is_system_init(msg: Message) -> TypeGuard[SystemMessage]:
    """Type guard for the SDK init message."""
    return isinstance(msg, SystemMessage) and msg.subtype == "init"


def is_debug() -> bool:
    """Check if debug logging is enabled."""
    return logger.isEnabledFor(logging.DEBUG)


def tool_result_text(content: Any) -> str:
    """Flatten SDK tool result content (str, list of blocks, or None)."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "") if isinstance(block, dict) else getattr(block, "text", "")
            for block in content
        ]
        text = "\n".join(p for p in parts if p)
        return text or safe_stringify(content)
    return safe_stringify(content)


def convert_usage(usage: Optional[dict]) -> Usage:
    if not usage:
        return Usage()
    return Usage(
        input_tokens=to_int(usage.get("input_tokens")),
        output_tokens=to_int(usage.get("output_tokens")),
        cache_creation_input_tokens=to_int(usage.get("cache_creation_input_tokens")),
        cache_read_input_tokens=to_int(usage.get("cache_read_input_tokens")),
    )


class ClaudeAdapter(BackendAdapter):
    """
    Maps Claude Agent SDK message objects.

    The SDK already speaks in system/assistant/user/result terms, so this is
    mostly a field-by-field copy. Thinking blocks are dropped.
    """

    kind = BackendKind.CLAUDE

    def __init__(self, cwd: Optional[str] = None):
        self.cwd = cwd

    def extract_session_id(self, event: Message) -> Optional[str]:
        if is_system_init(event) and isinstance(event.data, dict):
            session_id = event.data.get("session_id")
            return session_id if isinstance(session_id, str) and session_id else None
        if isinstance(event, SDKResultMessage):
            return event.session_id
        return None

    def translate(
        self,
        event: Message,
        session_id: Optional[str],
        last_assistant: Optional[AssistantMessage] = None,
    ) -> Optional[CanonicalMessage]:
        sid = session_id or PENDING_SESSION_ID

        if is_system_init(event):
            data = event.data if isinstance(event.data, dict) else {}
            return SystemInitMessage(
                session_id=data.get("session_id") or sid,
                model=data.get("model"),
                tools=list(data.get("tools") or []),
                cwd=data.get("cwd") or self.cwd,
                permission_mode=data.get("permissionMode"),
            )

        if isinstance(event, SDKAssistantMessage):
            blocks: List[AssistantBlock] = []
            for block in event.content:
                if isinstance(block, SDKTextBlock):
                    blocks.append(TextBlock(text=block.text))
                elif isinstance(block, SDKToolUseBlock):
                    blocks.append(ToolUseBlock(id=block.id, name=block.name, input=dict(block.input or {})))
            backend_error = getattr(event, "error", None)
            if not blocks and not backend_error:
                return None
            return AssistantMessage(
                content=blocks,
                session_id=sid,
                parent_tool_use_id=getattr(event, "parent_tool_use_id", None),
                backend_error=backend_error,
            )

        if isinstance(event, SDKUserMessage):
            parent_tool_use_id = getattr(event, "parent_tool_use_id", None)
            if isinstance(event.content, str):
                return UserMessage(content=event.content, session_id=sid, parent_tool_use_id=parent_tool_use_id)
            content: List[ContentBlock] = []
            for block in event.content:
                if isinstance(block, SDKToolResultBlock):
                    content.append(
                        ToolResultBlock(
                            tool_use_id=block.tool_use_id,
                            content=tool_result_text(block.content),
                            is_error=bool(block.is_error),
                        )
                    )
                elif isinstance(block, SDKTextBlock):
                    content.append(TextBlock(text=block.text))
            if not content:
                return None
            return UserMessage(content=content, session_id=sid, parent_tool_use_id=parent_tool_use_id)

        if isinstance(event, SDKResultMessage):
            return self._result(event, sid)

        return None

    def _result(self, msg: SDKResultMessage, session_id: str) -> ResultMessage:
        errors: List[str] = []
        if msg.is_error:
            subtype = msg.subtype if msg.subtype in ERROR_SUBTYPES else "error_during_execution"
            errors.append(msg.result or f"Claude run failed ({msg.subtype})")
            logger.error(f"[AGENT SDK] Execution failed with subtype: {msg.subtype}")
        else:
            subtype = "success"

        return ResultMessage(
            subtype=subtype,
            session_id=session_id,
            usage=convert_usage(msg.usage),
            cost_usd=msg.total_cost_usd or 0.0,
            duration_ms=msg.duration_ms,
            num_turns=msg.num_turns,
            final_text=None if msg.is_error else msg.result,
            errors=errors,
        )


class ClaudeHandle(BackendHandle):
    """
    In-process Claude Agent SDK client.

    Unlike the CLI backends this one accepts more input while a turn is
    running: ``send`` queues a follow-up prompt on the same client.
    """

    kind = BackendKind.CLAUDE
    supports_streaming_input = True

    def __init__(
        self,
        workspace_path: str,
        prompt: str,
        resume_session_id: Optional[str] = None,
        model: Optional[str] = None,
        allowed_tools: Optional[List[str]] = None,
        permission_mode: str = "bypassPermissions",
        cli_path: Optional[str] = None,
        connect_timeout: float = 30.0,
    ):
        super().__init__(workspace_path, resume_session_id)
        self.prompt = prompt
        self.model = model
        self.allowed_tools = allowed_tools or []
        self.permission_mode = permission_mode
        self.cli_path = cli_path
        self.connect_timeout = connect_timeout
        self._client: Optional[ClaudeSDKClient] = None
        self._stopped = False

    def _create_agent_options(self) -> ClaudeAgentOptions:
        """Build SDK options, resuming the backend session when one is known."""
        if self.has_established_session:
            logger.info(f"[AGENT SDK] Resuming session: {self.backend_session_id}")
        else:
            logger.info("[AGENT SDK] Creating new session (no resume)")
        return ClaudeAgentOptions(
            resume=self.backend_session_id,
            model=self.model,
            allowed_tools=self.allowed_tools,
            permission_mode=self.permission_mode,  # type: ignore[arg-type]
            cwd=self.workspace_path,
            cli_path=self.cli_path,
            setting_sources=["user", "project"],
            stderr=lambda msg: logger.error(f"[SDK STDERR] {msg}"),
        )

    async def events(self) -> AsyncIterator[Message]:
        self._client = ClaudeSDKClient(options=self._create_agent_options())
        logger.info(f"[AGENT SDK] Sending prompt (length: {len(self.prompt)} chars)")
        if is_debug():
            logger.debug(f"[AGENT SDK] Permission mode: {self.permission_mode}")
            logger.debug(f"[AGENT SDK] Allowed tools: {self.allowed_tools}")

        try:
            try:
                await asyncio.wait_for(self._client.connect(), timeout=self.connect_timeout)
            except CLINotFoundError as e:
                raise BackendUnavailableError(self.kind.value, str(e)) from e
            except asyncio.TimeoutError as e:
                raise BackendUnavailableError(
                    self.kind.value, f"no response within {self.connect_timeout}s"
                ) from e

            await self._client.query(self.prompt)
            async for msg in self._client.receive_response():
                if is_debug():
                    logger.debug(f"[AGENT SDK] Received message from SDK: {type(msg).__name__}")

                if is_system_init(msg) and isinstance(msg.data, dict):
                    sdk_session_id = msg.data.get("session_id")
                    if sdk_session_id and sdk_session_id != self.backend_session_id:
                        if self.has_established_session:
                            logger.warning(
                                f"[AGENT SDK] SDK returned different session ID! "
                                f"Expected: {self.backend_session_id}, Got: {sdk_session_id}"
                            )
                        logger.info(f"[AGENT SDK] Session established: {sdk_session_id}")
                        self.set_backend_session_id(sdk_session_id)

                yield msg
        except ClaudeSDKError as e:
            if self._stopped:
                logger.debug(f"[AGENT SDK] Error after stop (ignored): {e}")
                return
            logger.error(f"[AGENT SDK] Run failed: {e}", exc_info=True)
            raise BackendFatalError(str(e)) from e
        finally:
            self.mark_ended()
            await self._disconnect()

    async def send(self, prompt: str) -> None:
        if self._client is None or not self.is_running:
            raise BackendFatalError("Claude session is not running")
        logger.info(f"[AGENT SDK] Streaming follow-up prompt: {prompt[:LOG_TRUNCATE_LENGTH]}")
        await self._client.query(prompt)

    async def _disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as e:
            logger.warning(f"[AGENT SDK] Disconnect error (non-critical): {e}")

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.mark_ended()
        if self._client is not None:
            try:
                await self._client.interrupt()
            except Exception as e:
                logger.debug(f"[AGENT SDK] Interrupt failed: {e}")
        await self._disconnect()
