import json
from typing import Any
from urllib.parse import urlparse

import httpx

from codeloop.permissions import RiskLevel
from codeloop.tool import ToolContext, ToolOptions, ToolOutput
from codeloop.tools.html_utilities import html_to_text, page_title, parse_html

_DEFAULT_MAX_CHARS = 50_000
_MAX_RESPONSE_BYTES = 2_000_000  # 2 MB
_TIMEOUT_SECONDS = 30
_MAX_REDIRECTS = 5

_HEADERS = {
    "User-Agent": "codeloop/0.1 (+https://github.com/codeloop)",
    "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,text/plain;q=0.8,*/*;q=0.5",
    "Accept-Language": "en-US,en;q=0.5",
}


class WebFetchTool:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def name(self) -> str:
        return "web_fetch"

    @property
    def description(self) -> str:
        return (
            "Fetch content from a URL and return it as readable text. "
            "HTML pages are converted to plain text with links preserved, "
            "JSON is pretty-printed, other text is returned as is. GET requests only."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The HTTP or HTTPS URL to fetch",
                },
                "maxChars": {
                    "type": "integer",
                    "minimum": 1,
                    "description": (
                        f"Maximum characters of content to return (default {_DEFAULT_MAX_CHARS}). "
                        "Content beyond this limit is truncated with a notice."
                    ),
                },
            },
            "required": ["url"],
        }

    @property
    def options(self) -> ToolOptions:
        return ToolOptions(requires_permission=True, risk=RiskLevel.NETWORK)

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> str | ToolOutput:
        url: str = tool_input["url"]
        max_chars = int(tool_input.get("maxChars", _DEFAULT_MAX_CHARS))

        # Validate URL scheme
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ToolOutput(success=False, error="URL must be an absolute http or https URL")

        context.progress(f"Fetching {url}")
        try:
            async with httpx.AsyncClient(
                headers=_HEADERS,
                timeout=_TIMEOUT_SECONDS,
                follow_redirects=True,
                max_redirects=_MAX_REDIRECTS,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            return ToolOutput(success=False, error=f"Request timed out after {_TIMEOUT_SECONDS} seconds")
        except httpx.TooManyRedirects:
            return ToolOutput(success=False, error=f"Too many redirects (max {_MAX_REDIRECTS})")
        except httpx.HTTPError as ex:
            return ToolOutput(success=False, error=f"Request failed: {ex}")

        if response.status_code >= 400:
            return ToolOutput(success=False, error=f"HTTP {response.status_code} fetching {url}")

        # Reject oversized responses
        content_length = len(response.content)
        if content_length > _MAX_RESPONSE_BYTES:
            return ToolOutput(
                success=False,
                error=f"Response too large ({content_length:,} bytes, max {_MAX_RESPONSE_BYTES:,} bytes)",
            )

        content_type = response.headers.get("content-type", "")
        final_url = str(response.url)

        # Extract content based on content type
        title = ""
        if "text/html" in content_type or "application/xhtml" in content_type:
            soup = parse_html(response.text)
            title = page_title(soup)
            content = html_to_text(soup)
        elif "json" in content_type:
            try:
                content = json.dumps(response.json(), indent=2, ensure_ascii=False)
            except ValueError:
                content = response.text
        else:
            content = response.text

        # Truncate if needed
        original_length = len(content)
        truncated = original_length > max_chars
        if truncated:
            content = content[:max_chars]

        # Build metadata header
        parts = [f"URL: {url}"]
        if final_url != url:
            parts.append(f"Final URL: {final_url}")
        parts.append(f"Status: {response.status_code}")
        parts.append(f"Content-Type: {content_type}")
        if title:
            parts.append(f"Title: {title}")
        if truncated:
            parts.append(f"Length: {max_chars:,} chars (truncated from {original_length:,})")
        else:
            parts.append(f"Length: {original_length:,} chars")
        parts.extend(["", "--- Content ---", "", content])
        if truncated:
            parts.extend(["", f"[Content truncated at {max_chars:,} characters]"])
        return "\n".join(parts)
