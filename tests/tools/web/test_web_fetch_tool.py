import asyncio
import json
import unittest

import httpx

from codeloop.cancellation import CancellationToken
from codeloop.tool import ToolContext
from codeloop.tools.web.web_fetch_tool import WebFetchTool

_PAGE = """
<html>
  <head><title>Release notes</title><script>var x = 1;</script></head>
  <body>
    <h1>Version 2.0</h1>
    <p>See the <a href="https://example.com/changelog">full changelog</a>.</p>
    <ul><li>Faster</li><li>Smaller</li></ul>
  </body>
</html>
"""


def _handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/page":
        return httpx.Response(200, headers={"content-type": "text/html; charset=utf-8"}, text=_PAGE)
    if path == "/data":
        return httpx.Response(200, headers={"content-type": "application/json"}, text=json.dumps({"a": [1, 2]}))
    if path == "/old":
        return httpx.Response(301, headers={"location": "https://example.com/page"})
    if path == "/loop":
        return httpx.Response(302, headers={"location": "https://example.com/loop"})
    if path == "/text":
        return httpx.Response(200, headers={"content-type": "text/plain"}, text="x" * 100)
    if path == "/down":
        raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(404, text="not found")


def _context() -> ToolContext:
    return ToolContext(working_directory=".", cancel_token=CancellationToken())


class TestWebFetchTool(unittest.TestCase):
    def setUp(self) -> None:
        self.tool = WebFetchTool(transport=httpx.MockTransport(_handler))

    def _fetch(self, url: str, **extra):
        return asyncio.run(self.tool.execute({"url": url, **extra}, _context()))

    # -- properties --

    def test_name_and_options(self) -> None:
        self.assertEqual("web_fetch", self.tool.name)
        self.assertTrue(self.tool.options.requires_permission)
        self.assertEqual(["url"], self.tool.input_schema["required"])

    # -- execute --

    def test_html_is_converted_to_text(self) -> None:
        result = self._fetch("https://example.com/page")

        self.assertIn("Title: Release notes", result)
        self.assertIn("--- Content ---", result)
        self.assertIn("Version 2.0", result)
        self.assertIn("full changelog (https://example.com/changelog)", result)
        self.assertIn("- Faster", result)
        self.assertNotIn("var x", result)

    def test_json_is_pretty_printed(self) -> None:
        result = self._fetch("https://example.com/data")
        self.assertIn('"a": [\n    1,', result)

    def test_redirect_reports_final_url(self) -> None:
        result = self._fetch("https://example.com/old")
        self.assertIn("Final URL: https://example.com/page", result)

    def test_too_many_redirects(self) -> None:
        result = self._fetch("https://example.com/loop")
        self.assertFalse(result.success)
        self.assertIn("Too many redirects", result.error)

    def test_truncation(self) -> None:
        result = self._fetch("https://example.com/text", maxChars=10)
        self.assertIn("Length: 10 chars (truncated from 100)", result)
        self.assertIn("[Content truncated at 10 characters]", result)

    def test_http_error_status(self) -> None:
        result = self._fetch("https://example.com/missing")
        self.assertFalse(result.success)
        self.assertIn("HTTP 404", result.error)

    def test_connection_failure(self) -> None:
        result = self._fetch("https://example.com/down")
        self.assertFalse(result.success)
        self.assertIn("Request failed", result.error)

    def test_rejects_non_http_urls(self) -> None:
        result = self._fetch("file:///etc/passwd")
        self.assertFalse(result.success)


if __name__ == "__main__":
    unittest.main()
