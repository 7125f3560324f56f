"""OpenCode backend: talks to a running ``opencode serve`` over HTTP + SSE."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .base import BackendAdapter, BackendHandle
from .tools import as_dict, get_string, to_int
from ..exceptions import BackendFatalError, BackendUnavailableError
from ..models.messages import (
    PENDING_SESSION_ID,
    AssistantMessage,
    CanonicalMessage,
    ResultMessage,
    TextBlock,
    ToolUseBlock,
    Usage,
    UserMessage,
    describe_error,
    make_error_result,
    make_tool_result,
)
from ..models.session import BackendKind
from ..types import NativeEvent

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = ("session.idle", "session.error")


def event_session_id(event: NativeEvent) -> Optional[str]:
    """Session id carried by an OpenCode bus event, wherever the event type keeps it."""
    properties = as_dict(event.get("properties"))
    event_type = event.get("type")
    if event_type == "message.part.updated":
        return get_string(as_dict(properties.get("part")), "sessionID")
    if event_type == "message.updated":
        return get_string(as_dict(properties.get("info")), "sessionID")
    return get_string(properties, "sessionID")


class OpenCodeAdapter(BackendAdapter):
    """
    Maps OpenCode bus events.

    OpenCode has no result event: ``session.idle`` is turned into a success
    result whose text comes from the last assistant turn and whose metrics come
    from the last ``message.updated`` seen for an assistant message.
    """

    kind = BackendKind.OPENCODE

    def __init__(self, cwd: Optional[str] = None):
        self.cwd = cwd
        self._assistant_info: Dict[str, Any] = {}

    def extract_session_id(self, event: NativeEvent) -> Optional[str]:
        return event_session_id(event)

    def translate(
        self,
        event: NativeEvent,
        session_id: Optional[str],
        last_assistant: Optional[AssistantMessage] = None,
    ) -> Optional[CanonicalMessage]:
        sid = session_id or PENDING_SESSION_ID
        event_type = event.get("type")
        properties = as_dict(event.get("properties"))

        if event_type == "message.part.updated":
            return self._part(properties, sid)

        if event_type == "message.updated":
            info = as_dict(properties.get("info"))
            if info.get("role") == "user":
                title = get_string(as_dict(info.get("summary")), "title")
                return UserMessage(content=title or "User message", session_id=sid)
            if info.get("role") == "assistant":
                self._assistant_info = info
            return None

        if event_type == "session.idle":
            return self.synthesize_result(sid, last_assistant)

        if event_type == "session.error":
            error = as_dict(properties.get("error"))
            data = as_dict(error.get("data"))
            return make_error_result(
                describe_error(
                    name=get_string(error, "name"),
                    message=get_string(data, "message"),
                    status_code=data.get("statusCode"),
                ),
                sid,
            )

        return None

    def _part(self, properties: Dict[str, Any], session_id: str) -> Optional[CanonicalMessage]:
        part = as_dict(properties.get("part"))
        part_type = part.get("type")

        if part_type == "text":
            delta = properties.get("delta")
            text = delta if isinstance(delta, str) else (get_string(part, "text") or "")
            message_id = get_string(part, "messageID")
            if message_id:
                return AssistantMessage(
                    content=[TextBlock(text=text)], session_id=session_id, message_id=message_id
                )
            return AssistantMessage(content=[TextBlock(text=text)], session_id=session_id)

        if part_type == "tool":
            state = as_dict(part.get("state"))
            status = state.get("status")
            call_id = get_string(part, "callID") or ""
            if status == "running":
                return AssistantMessage(
                    content=[
                        ToolUseBlock(
                            id=call_id,
                            name=get_string(part, "tool") or "tool",
                            input=as_dict(state.get("input")),
                        )
                    ],
                    session_id=session_id,
                )
            if status == "completed":
                return make_tool_result(call_id, get_string(state, "output") or "", False, session_id)
            if status == "error":
                return make_tool_result(call_id, get_string(state, "error") or "", True, session_id)

        # pending tool states, file/snapshot/patch parts
        return None

    def synthesize_result(
        self, session_id: str, last_assistant: Optional[AssistantMessage] = None
    ) -> ResultMessage:
        info = self._assistant_info
        tokens = as_dict(info.get("tokens"))
        cache = as_dict(tokens.get("cache"))
        timing = as_dict(info.get("time"))

        duration_ms = 0
        if timing.get("created") and timing.get("completed"):
            duration_ms = to_int(timing["completed"]) - to_int(timing["created"])

        final_text = last_assistant.text if last_assistant else None
        return ResultMessage(
            subtype="success",
            session_id=session_id,
            usage=Usage(
                input_tokens=to_int(tokens.get("input")),
                output_tokens=to_int(tokens.get("output")),
                cache_creation_input_tokens=to_int(cache.get("write")),
                cache_read_input_tokens=to_int(cache.get("read")),
            ),
            cost_usd=float(info.get("cost") or 0),
            duration_ms=max(duration_ms, 0),
            final_text=final_text or "Session completed successfully",
        )


_END = object()


class OpenCodeHandle(BackendHandle):
    """
    One prompt against an OpenCode server.

    The SSE subscription is opened before the prompt is posted so no event of
    the turn is missed. Both run as tasks feeding a single queue; the first
    failure of either ends the iteration.
    """

    kind = BackendKind.OPENCODE

    def __init__(
        self,
        base_url: str,
        workspace_path: str,
        prompt: str,
        resume_session_id: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout: float = 10.0,
    ):
        super().__init__(workspace_path, resume_session_id)
        self.base_url = base_url.rstrip("/")
        self.prompt = prompt
        self.model = model
        self._client = client
        self._owns_client = client is None
        self._connect_timeout = connect_timeout
        self._tasks: List[asyncio.Task] = []
        self._stopped = False
        self._subscribed = asyncio.Event()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(None, connect=self._connect_timeout),
            )
        return self._client

    def _message_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"parts": [{"type": "text", "text": self.prompt}]}
        if self.model and "/" in self.model:
            provider, model = self.model.split("/", 1)
            body["model"] = {"providerID": provider, "modelID": model}
        return body

    async def _create_session(self, client: httpx.AsyncClient) -> str:
        response = await client.post("/session", params={"directory": self.workspace_path}, json={})
        response.raise_for_status()
        session_id = get_string(as_dict(response.json()), "id")
        if not session_id:
            raise BackendFatalError("OpenCode did not return a session id")
        return session_id

    async def _pump_events(self, client: httpx.AsyncClient, queue: asyncio.Queue) -> None:
        try:
            async with client.stream(
                "GET", "/event", params={"directory": self.workspace_path}
            ) as response:
                response.raise_for_status()
                self._subscribed.set()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        logger.warning(f"Failed to parse OpenCode event: {line[:200]}")
                        continue
                    if isinstance(event, dict):
                        await queue.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(e)
        finally:
            await queue.put(_END)

    async def _post_prompt(
        self, client: httpx.AsyncClient, session_id: str, queue: asyncio.Queue
    ) -> None:
        try:
            await self._subscribed.wait()
            response = await client.post(f"/session/{session_id}/message", json=self._message_body())
            response.raise_for_status()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(e)

    async def events(self) -> AsyncIterator[NativeEvent]:
        client = self._get_client()
        queue: asyncio.Queue = asyncio.Queue()

        try:
            try:
                session_id = self.backend_session_id or await self._create_session(client)
            except httpx.ConnectError as e:
                raise BackendUnavailableError(self.kind.value, f"cannot reach {self.base_url}") from e
            except httpx.HTTPStatusError as e:
                raise BackendFatalError(f"OpenCode session creation failed: {e}") from e
            self.set_backend_session_id(session_id)
            logger.info(f"OpenCode session {session_id} in {self.workspace_path}")

            self._tasks.append(asyncio.create_task(self._pump_events(client, queue)))
            self._tasks.append(asyncio.create_task(self._post_prompt(client, session_id, queue)))

            while True:
                item = await queue.get()
                if item is _END:
                    if self._stopped:
                        return
                    raise BackendFatalError("OpenCode event stream closed before the session went idle")
                if isinstance(item, httpx.ConnectError):
                    raise BackendUnavailableError(self.kind.value, f"cannot reach {self.base_url}") from item
                if isinstance(item, BaseException):
                    if self._stopped:
                        return
                    raise BackendFatalError(f"OpenCode request failed: {item}") from item

                event: NativeEvent = item  # type: ignore[assignment]
                if event_session_id(event) != session_id:
                    continue
                yield event
                if event.get("type") in TERMINAL_EVENTS:
                    return
        finally:
            for task in self._tasks:
                if not task.done():
                    task.cancel()
            self._tasks.clear()
            self.mark_ended()
            if self._owns_client and self._client is not None:
                await self._client.aclose()
                self._client = None

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        session_id = self.backend_session_id
        if session_id and self._client is not None:
            try:
                await self._client.post(f"/session/{session_id}/abort")
            except httpx.HTTPError as e:
                logger.warning(f"Failed to abort OpenCode session {session_id}: {e}")
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self.mark_ended()
