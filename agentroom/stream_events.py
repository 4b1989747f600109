"""Classified events produced by one streaming generation call.

The union is closed: `classify_part` maps raw stream parts onto exactly these
kinds and drops everything else as lifecycle noise.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCall:
    tool_name: str
    call_id: str = ""
    args: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    tool_name: str
    call_id: str = ""
    result: Any = None
    is_error: bool = False


@dataclass(frozen=True)
class TextEnd:
    pass


@dataclass(frozen=True)
class StepFinish:
    finish_reason: str = ""


@dataclass(frozen=True)
class StreamError:
    message: str


StreamEvent = Union[TextDelta, ReasoningDelta, ToolCall, ToolResult, TextEnd, StepFinish, StreamError]

# Raw part kinds understood by the classifier.
TEXT_DELTA = "text-delta"
REASONING_DELTA = "reasoning-delta"
TOOL_CALL = "tool-call"
TOOL_RESULT = "tool-result"
TOOL_OUTPUT = "tool-output"
TEXT_END = "text-end"
STEP_FINISH = "step-finish"
ERROR = "error"


def classify_part(part: dict) -> Optional[StreamEvent]:
    """Map one raw stream part onto the event union. Unknown kinds give None."""
    kind = part.get("type")
    if kind == TEXT_DELTA:
        text = part.get("text") or ""
        return TextDelta(text) if text else None
    if kind == REASONING_DELTA:
        text = part.get("text") or ""
        return ReasoningDelta(text) if text else None
    if kind == TOOL_CALL:
        return ToolCall(
            tool_name=str(part.get("toolName") or "tool"),
            call_id=str(part.get("toolCallId") or ""),
            args=dict(part.get("args") or {}),
        )
    if kind in (TOOL_RESULT, TOOL_OUTPUT):
        return ToolResult(
            tool_name=str(part.get("toolName") or "tool"),
            call_id=str(part.get("toolCallId") or ""),
            result=part.get("result", part.get("output")),
            is_error=bool(part.get("isError")),
        )
    if kind == TEXT_END:
        return TextEnd()
    if kind == STEP_FINISH:
        return StepFinish(str(part.get("finishReason") or ""))
    if kind == ERROR:
        error = part.get("error")
        return StreamError(str(error) if error else "Unknown stream error")
    return None
