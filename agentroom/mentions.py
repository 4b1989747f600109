"""Mention parsing and resolution against a channel roster."""

import re
from typing import Iterable, Optional

MENTION_RE = re.compile(r"@([A-Za-z0-9_]+)")


def parse_mentions(text: str) -> list[str]:
    """Lowercased names following `@`, first-occurrence order, no duplicates."""
    seen = set()
    names = []
    for match in MENTION_RE.finditer(text or ""):
        name = match.group(1).lower()
        if name not in seen:
            seen.add(name)
            names.append(name)
    return names


def resolve_mentioned_agents(
    text: str,
    roster: Iterable[dict],
    exclude_name: Optional[str] = None,
) -> list[dict]:
    """Roster agents mentioned in `text`, in the order they are first mentioned.

    Names with no matching roster entry are skipped (they may be people). When
    `exclude_name` is given (the agent that wrote `text`), that agent is never
    returned.
    """
    by_name = {}
    for agent in roster:
        key = (agent.get("name") or "").lower()
        if key and key not in by_name:
            by_name[key] = agent
    excluded = (exclude_name or "").lower()

    targets = []
    for name in parse_mentions(text):
        if name == excluded:
            continue
        agent = by_name.get(name)
        if agent is not None:
            targets.append(agent)
    return targets
