"""Folds classified stream events into one message and persists every step.

Content only ever grows: each write is the previous content plus a suffix, so
observers of the message never see it shrink or roll back.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import database as db
from .errors import PersistenceFailure, StreamFailure
from .runtime_config import TOOL_SNIPPET_CHARS
from .stream_events import (
    ReasoningDelta,
    StepFinish,
    StreamError,
    StreamEvent,
    TextDelta,
    TextEnd,
    ToolCall,
    ToolResult,
)
from .websocket import manager

logger = logging.getLogger("agentroom.accumulator")

PARAGRAPH_BREAK = "\n\n"
EMPTY_RESPONSE_MARKER = "_(no response)_"


def render_event(event: StreamEvent) -> str:
    """Text an event contributes to the message transcript."""
    if isinstance(event, (TextDelta, ReasoningDelta)):
        return event.text
    if isinstance(event, ToolCall):
        return f"\n\n🔧 Calling `{event.tool_name}`...\n\n"
    if isinstance(event, ToolResult):
        if event.is_error:
            marker = f"\n⚠️ `{event.tool_name}` failed"
        else:
            marker = f"\n✅ `{event.tool_name}` finished"
        if isinstance(event.result, str) and event.result.strip():
            snippet = event.result.strip()
            if len(snippet) > TOOL_SNIPPET_CHARS:
                snippet = snippet[:TOOL_SNIPPET_CHARS] + "..."
            marker += f": {snippet}"
        return marker + "\n\n"
    if isinstance(event, (TextEnd, StepFinish)):
        return PARAGRAPH_BREAK
    if isinstance(event, StreamError):
        return f"\n\n[Error: {event.message}]"
    return ""


class ResponseAccumulator:
    """Owns the content of exactly one placeholder message."""

    def __init__(self, channel_id: str, message_id: str):
        self.channel_id = channel_id
        self.message_id = message_id
        self.content = ""
        self.updates = 0
        self.errors: list[str] = []
        self._answer_parts: list[str] = []

    @property
    def text(self) -> str:
        """What the agent authored: text deltas only, without tool markers."""
        return "".join(self._answer_parts)

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def _end_text_block(self):
        # Text from separate steps must not run together when scanned for mentions.
        if self._answer_parts and self._answer_parts[-1] != PARAGRAPH_BREAK:
            self._answer_parts.append(PARAGRAPH_BREAK)

    async def apply(self, event: StreamEvent):
        if isinstance(event, TextDelta):
            self._answer_parts.append(event.text)
        elif isinstance(event, StreamError):
            self.errors.append(event.message)
        elif isinstance(event, ToolCall):
            self._end_text_block()
        elif isinstance(event, (TextEnd, StepFinish)):
            self._end_text_block()
            if not self.content or self.content.endswith(PARAGRAPH_BREAK):
                # Nothing to separate.
                return
        suffix = render_event(event)
        if suffix:
            await self._append(suffix)

    async def finish(self) -> str:
        """Close out a stream. Raises StreamFailure if the stream reported an error."""
        if self.errors:
            raise StreamFailure("; ".join(self.errors))
        if not self.content.strip():
            await self._append(EMPTY_RESPONSE_MARKER)
        return self.text.strip()

    async def annotate_failure(self, annotation: str):
        """Append a visible failure marker after whatever was streamed so far."""
        prefix = PARAGRAPH_BREAK if self.content else ""
        await self._append(prefix + annotation)

    async def _append(self, suffix: str):
        new_content = self.content + suffix
        try:
            saved = await db.update_message_content(self.message_id, new_content)
        except Exception as exc:
            raise PersistenceFailure(str(exc) or exc.__class__.__name__) from exc
        if saved is None:
            raise PersistenceFailure(f"message {self.message_id} no longer exists")
        self.content = new_content
        self.updates += 1
        await manager.broadcast(self.channel_id, {"type": "message_update", "message": saved})


async def write_terminal(channel_id: str, message_id: str, content: str) -> Optional[dict]:
    """Replace a placeholder outright (used when no invocation runs at all)."""
    try:
        saved = await db.update_message_content(message_id, content)
    except Exception as exc:
        raise PersistenceFailure(str(exc) or exc.__class__.__name__) from exc
    if saved is not None:
        await manager.broadcast(channel_id, {"type": "message_update", "message": saved})
    return saved
