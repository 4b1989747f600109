"""External research tools: web search with provider fallback, and URL fetch."""

from __future__ import annotations

import os
import re
from urllib.parse import urlparse

import httpx

TAVILY_URL = "https://api.tavily.com/search"
FETCH_MAX_CHARS = 12000

_TAG_RE = re.compile(r"<[^>]+>")
_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
_SPACE_RE = re.compile(r"\s+")


def _searxng_url() -> str:
    return (os.environ.get("SEARXNG_URL") or "").strip()


def _tavily_key() -> str:
    return (os.environ.get("TAVILY_API_KEY") or "").strip()


def providers_configured() -> dict:
    return {"searxng": bool(_searxng_url()), "tavily": bool(_tavily_key())}


async def search_web(query: str, limit: int = 5) -> dict:
    if not query.strip():
        return {"ok": False, "error": "Query is required.", "provider": None, "results": []}

    providers = providers_configured()
    errors = []
    if providers["searxng"]:
        result = await _search_searxng(query, limit=limit)
        if result.get("ok"):
            return result
        errors.append(f"searxng: {result.get('error')}")
    if providers["tavily"]:
        result = await _search_tavily(query, limit=limit)
        if result.get("ok"):
            return result
        errors.append(f"tavily: {result.get('error')}")

    if errors:
        return {"ok": False, "provider": None, "results": [], "error": "; ".join(errors)}
    return {
        "ok": False,
        "provider": None,
        "results": [],
        "error": "No web search provider configured (set SEARXNG_URL or TAVILY_API_KEY).",
    }


async def fetch_url(url: str) -> dict:
    if not url.startswith(("http://", "https://")):
        return {"ok": False, "error": "Only http/https URLs are allowed.", "url": url}
    try:
        async with httpx.AsyncClient(timeout=20, follow_redirects=True) as client:
            resp = await client.get(url)
    except httpx.HTTPError as exc:
        return {"ok": False, "url": url, "error": str(exc)}

    content_type = resp.headers.get("content-type", "")
    text = resp.text
    if "html" in content_type:
        text = html_to_text(text)
    return {
        "ok": resp.status_code < 400,
        "url": url,
        "status_code": resp.status_code,
        "content_type": content_type,
        "content": text[:FETCH_MAX_CHARS],
    }


def html_to_text(html: str) -> str:
    stripped = _SCRIPT_RE.sub(" ", html or "")
    stripped = _TAG_RE.sub(" ", stripped)
    return _SPACE_RE.sub(" ", stripped).strip()


def format_search_results(result: dict) -> str:
    """Plain-text rendering handed back to the model as the tool output."""
    if not result.get("ok"):
        return f"Search failed: {result.get('error') or 'unknown error'}"
    items = result.get("results") or []
    if not items:
        return "No results."
    lines = []
    for idx, item in enumerate(items, start=1):
        lines.append(f"{idx}. {item.get('title') or '(untitled)'} — {item.get('url', '')}")
        if item.get("snippet"):
            lines.append(f"   {item['snippet']}")
    return "\n".join(lines)


async def _search_searxng(query: str, limit: int) -> dict:
    try:
        async with httpx.AsyncClient(timeout=20) as client:
            resp = await client.get(
                f"{_searxng_url().rstrip('/')}/search",
                params={"q": query, "format": "json", "language": "en"},
            )
        if resp.status_code >= 400:
            return {"ok": False, "provider": "searxng", "results": [], "error": resp.text[:400]}
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        return {"ok": False, "provider": "searxng", "results": [], "error": str(exc)}
    results = [
        {
            "title": item.get("title", ""),
            "url": item.get("url", ""),
            "snippet": (item.get("content") or "")[:400],
            "source": _hostname(item.get("url", "")),
        }
        for item in (payload.get("results") or [])[:limit]
    ]
    return {"ok": True, "provider": "searxng", "results": results}


async def _search_tavily(query: str, limit: int) -> dict:
    body = {
        "api_key": _tavily_key(),
        "query": query,
        "search_depth": "advanced",
        "max_results": limit,
        "include_answer": False,
    }
    try:
        async with httpx.AsyncClient(timeout=25) as client:
            resp = await client.post(TAVILY_URL, headers={"content-type": "application/json"}, json=body)
        if resp.status_code >= 400:
            return {"ok": False, "provider": "tavily", "results": [], "error": resp.text[:400]}
        payload = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        return {"ok": False, "provider": "tavily", "results": [], "error": str(exc)}
    results = [
        {
            "title": item.get("title", ""),
            "url": item.get("url", ""),
            "snippet": (item.get("content") or "")[:400],
            "source": _hostname(item.get("url", "")),
        }
        for item in (payload.get("results") or [])[:limit]
    ]
    return {"ok": True, "provider": "tavily", "results": results}


def _hostname(url: str) -> str:
    try:
        return urlparse(url).netloc
    except ValueError:
        return ""
