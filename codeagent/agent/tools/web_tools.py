import html
import re
from pathlib import Path

import httpx

from codeagent.agent.constants import FETCH_MAX_CHARS, FETCH_TIMEOUT_SECONDS
from codeagent.agent.tool_registry import ToolError, ToolRegistry

_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_RE = re.compile(r"\n\s*\n+")


def html_to_text(markup: str) -> str:
    text = _SCRIPT_RE.sub("", markup)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    return _BLANK_RE.sub("\n\n", text).strip()


async def fetch_url(root: Path, url: str, transport: httpx.AsyncBaseTransport | None = None) -> str:
    """Fetch a URL and return readable text."""
    if not url or not url.startswith(("http://", "https://")):
        raise ToolError("Invalid URL format")

    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(FETCH_TIMEOUT_SECONDS, connect=10.0),
            follow_redirects=True,
            headers={"User-Agent": "codeagent/0.1"},
            transport=transport,
        ) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        raise ToolError(f"Failed to fetch URL: {e}")

    if response.status_code >= 400:
        raise ToolError(f"HTTP {response.status_code} fetching {url}")

    text = response.text
    if "html" in response.headers.get("content-type", ""):
        text = html_to_text(text)
    if len(text) > FETCH_MAX_CHARS:
        text = text[:FETCH_MAX_CHARS] + "\n... (truncated)"
    return text or "(empty response)"


def register_web_tools(registry: ToolRegistry) -> None:
    registry.register(
        name="fetch_url",
        description="Fetch content from a URL (documentation, APIs, web pages). Returns text content.",
        parameters={
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The URL to fetch content from",
                },
            },
            "required": ["url"],
        },
        handler=fetch_url,
    )
