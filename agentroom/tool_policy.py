"""Tool provisioning by capability class.

Only research-capable agents get the external tool set. Everyone else gets no
tools at all and has to delegate research through an @mention.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from . import web_search
from .errors import ToolInvocationFailure

logger = logging.getLogger("agentroom.tools")

RESEARCH_CAPABILITY = "research"
DEFAULT_CAPABILITY = "general"


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict
    handler: Callable[[dict], Awaitable[str]]

    def as_openai_tool(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


async def _web_search(args: dict) -> str:
    query = str(args.get("query") or "").strip()
    if not query:
        raise ToolInvocationFailure("web_search needs a non-empty query")
    try:
        limit = int(args.get("limit") or 5)
    except (TypeError, ValueError):
        limit = 5
    result = await web_search.search_web(query, limit=max(1, min(limit, 10)))
    if not result.get("ok"):
        raise ToolInvocationFailure(result.get("error") or "search failed")
    return web_search.format_search_results(result)


async def _fetch_url(args: dict) -> str:
    url = str(args.get("url") or "").strip()
    result = await web_search.fetch_url(url)
    if not result.get("ok"):
        raise ToolInvocationFailure(result.get("error") or f"HTTP {result.get('status_code')}")
    return result.get("content") or ""


RESEARCH_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name="web_search",
        description="Search the web. Returns titles, URLs and short snippets.",
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to search for."},
                "limit": {"type": "integer", "minimum": 1, "maximum": 10},
            },
            "required": ["query"],
        },
        handler=_web_search,
    ),
    ToolSpec(
        name="fetch_url",
        description="Fetch a web page and return its readable text.",
        parameters={
            "type": "object",
            "properties": {"url": {"type": "string", "description": "http(s) URL to fetch."}},
            "required": ["url"],
        },
        handler=_fetch_url,
    ),
)


def is_research_capable(agent: dict) -> bool:
    return (agent.get("capability") or DEFAULT_CAPABILITY) == RESEARCH_CAPABILITY


def tools_for_agent(agent: dict) -> list[ToolSpec]:
    if is_research_capable(agent):
        return list(RESEARCH_TOOLS)
    return []


def parse_tool_arguments(raw: Any) -> dict:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ToolInvocationFailure(f"arguments are not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ToolInvocationFailure("arguments must be a JSON object")
    return parsed


async def run_tool(tools: list[ToolSpec], name: str, args: dict) -> str:
    """Execute one granted tool. Anything that goes wrong is a ToolInvocationFailure."""
    spec = next((t for t in tools if t.name == name), None)
    if spec is None:
        raise ToolInvocationFailure(f"tool `{name}` is not available to this agent")
    try:
        return await spec.handler(args)
    except ToolInvocationFailure:
        raise
    except Exception as exc:
        logger.exception("Tool %s crashed", name)
        raise ToolInvocationFailure(f"{name}: {exc}") from exc
