"""Context for one agent invocation: bounded history plus composed instructions.

Reads only. Given the same channel and agent state it always produces the same
instructions and history.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from . import database as db
from . import tool_policy
from .errors import ContextBuildFailure
from .runtime_config import HISTORY_LIMIT, MAX_DELEGATION_DEPTH, PLACEHOLDER_TEXT

logger = logging.getLogger("agentroom.context")

FALLBACK_INSTRUCTIONS = "You are a helpful assistant in a chat channel."
_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


@dataclass(frozen=True)
class InvocationContext:
    """Snapshot taken when an invocation starts. Never persisted."""

    channel_id: str
    agent: dict
    depth: int
    instructions: str
    history: tuple[dict, ...]
    roster: tuple[dict, ...]


def _speaker_name(raw: str) -> str:
    cleaned = _NAME_UNSAFE.sub("_", raw or "").strip("_")
    return cleaned[:64] or "unknown"


def build_history(messages: list[dict], agent_names: dict[str, str],
                  skip_ids: frozenset = frozenset()) -> list[dict]:
    """Map stored messages onto the two-role chat scheme, oldest first."""
    history = []
    for msg in messages:
        if msg["id"] in skip_ids:
            continue
        author_type = msg.get("author_type")
        if author_type == "agent" and msg.get("content") == PLACEHOLDER_TEXT:
            # Another branch that has not produced anything yet.
            continue
        if author_type == "user":
            role = "user"
            name = msg.get("author_id") or "user"
        else:
            role = "assistant"
            name = "system" if author_type == "system" else agent_names.get(msg.get("author_id"), msg.get("author_id"))
        history.append({"role": role, "name": _speaker_name(name), "content": msg.get("content") or ""})
    return history


def build_instructions(
    agent: dict,
    others: list[dict],
    depth: int,
    triggering_username: Optional[str] = None,
    tools: Optional[list] = None,
) -> str:
    """Compose the system instructions for one invocation."""
    name = agent["name"]
    s = (agent.get("system_instructions") or "").strip() or FALLBACK_INSTRUCTIONS

    s += "\n\n=== IDENTITY ==="
    s += f"\nYou are @{name}."
    if (agent.get("description") or "").strip():
        s += f" {agent['description'].strip()}"
    s += "\nWrite your reply directly, without a name prefix."

    s += "\n\n=== DELEGATION ==="
    if others:
        s += "\nOther agents in this channel:"
        for other in others:
            desc = (other.get("description") or "").strip() or "No description."
            s += f"\n- @{other['name']}: {desc}"
        s += "\nWriting @name hands a task to that agent. It will be invoked and will reply in this channel."
        s += "\nUse @name ONLY to delegate. Never @mention an agent just to refer to it; write its name without the @."
        s += "\nDelegate dependent tasks sequentially: mention one agent, wait for its reply, then mention the next."
        s += "\nMention several agents in one message only when their tasks are independent of each other."
        s += f"\nNever mention yourself (@{name})."
    else:
        s += "\nThere are no other agents in this channel. Answer directly."
    if depth >= MAX_DELEGATION_DEPTH - 1:
        s += "\nThis collaboration chain is at its depth limit. Do not delegate; answer directly."

    s += "\n\n=== TOOLS ==="
    if tools:
        s += "\nYou can call these tools:"
        for spec in tools:
            s += f"\n- {spec.name}: {spec.description}"
        s += "\nYou MUST end your response with a written summary of what you found."
        s += " A tool call on its own is not an answer."
    else:
        s += "\nYou have no tools. Do not pretend to browse or look things up."
        researchers = [o for o in others if tool_policy.is_research_capable(o)]
        if researchers:
            names = ", ".join(f"@{o['name']}" for o in researchers)
            s += f"\nIf a task needs research, delegate it to {names}."

    if triggering_username:
        s += "\n\n=== REQUESTED BY ==="
        s += f"\nThis request came from {triggering_username}. Address {triggering_username} by name in your reply."

    return s


async def build_context(
    channel_id: str,
    agent_id: str,
    depth: int,
    triggering_text: str = "",
    triggering_username: Optional[str] = None,
    placeholder_id: Optional[str] = None,
    trigger_message_id: Optional[str] = None,
) -> InvocationContext:
    """Snapshot what one invocation sees.

    `trigger_message_id` names the stored message that caused the invocation. If
    that message falls outside the history window, the triggering text is appended
    as a final user turn. Without an id the window is searched by content.
    """
    try:
        agent = await db.get_agent(agent_id)
        others = await db.list_channel_agents(channel_id, exclude_agent_id=agent_id)
        messages = await db.get_history(channel_id, limit=HISTORY_LIMIT)
    except Exception as exc:
        raise ContextBuildFailure(str(exc) or exc.__class__.__name__) from exc
    if agent is None:
        raise ContextBuildFailure(f"agent {agent_id} does not exist")

    agent_names = {a["id"]: a["name"] for a in others}
    agent_names[agent["id"]] = agent["name"]
    skip = frozenset([placeholder_id]) if placeholder_id else frozenset()

    instructions = build_instructions(
        agent,
        others,
        depth,
        triggering_username=triggering_username,
        tools=tool_policy.tools_for_agent(agent),
    )
    history = build_history(messages, agent_names, skip)
    if trigger_message_id:
        in_window = any(m["id"] == trigger_message_id for m in messages)
    else:
        in_window = any(h["content"].strip() == triggering_text.strip() for h in history)
    if triggering_text and not in_window:
        history.append({
            "role": "user",
            "name": _speaker_name(triggering_username or "user"),
            "content": triggering_text,
        })
    logger.debug("Context for %s in %s: %d history messages", agent["name"], channel_id, len(history))
    return InvocationContext(
        channel_id=channel_id,
        agent=agent,
        depth=depth,
        instructions=instructions,
        history=tuple(history),
        roster=tuple(others),
    )
