import asyncio
import unittest
from types import SimpleNamespace

import anthropic
import httpx

from codeloop.errors import BackendFatalError, BackendUnavailableError
from codeloop.provider import ModelRequest
from codeloop.providers.anthropic_provider import AnthropicProvider, map_anthropic_error, translate_event
from codeloop.providers.common import CONTINUATION_STUB
from codeloop.stream_events import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageDelta,
    MessageStart,
    MessageStop,
)
from codeloop.tool import ToolDescriptor

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _status_error(cls, status: int):
    return cls("error", response=httpx.Response(status, request=_REQUEST), body=None)


class _FakeStream:
    def __init__(self, events: list[object]):
        self._events = events

    def __aiter__(self):
        self._iter = iter(self._events)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class _FakeMessages:
    def __init__(self, stream_events=None, create_response=None, error=None):
        self._stream_events = stream_events or []
        self._create_response = create_response
        self._error = error
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        if kwargs.get("stream"):
            return _FakeStream(self._stream_events)
        return self._create_response


class _FakeClient:
    def __init__(self, **kwargs):
        self.messages = _FakeMessages(**kwargs)


def _usage(input_tokens=0, output_tokens=0):
    return SimpleNamespace(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_read_input_tokens=None,
        cache_creation_input_tokens=None,
    )


_RAW_EVENTS = [
    SimpleNamespace(type="message_start", message=SimpleNamespace(id="msg_1", model="m", usage=_usage(12))),
    SimpleNamespace(type="content_block_start", index=0, content_block=SimpleNamespace(type="text", text="")),
    SimpleNamespace(type="content_block_delta", index=0, delta=SimpleNamespace(type="text_delta", text="Hello")),
    SimpleNamespace(type="content_block_stop", index=0),
    SimpleNamespace(
        type="content_block_start",
        index=1,
        content_block=SimpleNamespace(type="tool_use", id="t1", name="read_file"),
    ),
    SimpleNamespace(
        type="content_block_delta",
        index=1,
        delta=SimpleNamespace(type="input_json_delta", partial_json='{"path": "x"}'),
    ),
    SimpleNamespace(type="content_block_stop", index=1),
    SimpleNamespace(type="message_delta", delta=SimpleNamespace(stop_reason="tool_use"), usage=_usage(0, 5)),
    SimpleNamespace(type="message_stop"),
]


class AnthropicProviderTests(unittest.TestCase):
    def _make_provider(self, **kwargs) -> AnthropicProvider:
        provider = AnthropicProvider.__new__(AnthropicProvider)
        provider._client = _FakeClient(**kwargs)
        return provider

    def _collect(self, provider: AnthropicProvider, request: ModelRequest) -> list:
        async def run():
            return [event async for event in provider.stream(request)]

        return asyncio.run(run())

    def test_translate_event(self) -> None:
        events = [e for raw in _RAW_EVENTS for e in translate_event(raw)]

        self.assertEqual(
            [MessageStart, ContentBlockStart, ContentBlockDelta, ContentBlockStop,
             ContentBlockStart, ContentBlockDelta, ContentBlockStop, MessageDelta, MessageStop],
            [type(e) for e in events],
        )
        self.assertEqual(12, events[0].usage.input_tokens)
        self.assertEqual("t1", events[4].tool_use_id)
        self.assertEqual('{"path": "x"}', events[5].partial_json)
        self.assertEqual("tool_use", events[7].stop_reason)
        self.assertEqual([], translate_event(SimpleNamespace(type="ping")))

    def test_stream_sends_tools_and_prepends_user_stub(self) -> None:
        provider = self._make_provider(stream_events=_RAW_EVENTS)
        request = ModelRequest(
            model="m",
            max_output_tokens=100,
            system_prompt="sys",
            messages=[{"role": "assistant", "content": "summary"}, {"role": "user", "content": "go on"}],
            tools=[ToolDescriptor("read_file", "Read a file", {"type": "object"})],
            temperature=0.5,
        )

        events = self._collect(provider, request)

        self.assertEqual(9, len(events))
        call = provider._client.messages.calls[0]
        self.assertTrue(call["stream"])
        self.assertEqual("sys", call["system"])
        self.assertEqual([{"name": "read_file", "description": "Read a file", "input_schema": {"type": "object"}}], call["tools"])
        self.assertEqual({"role": "user", "content": CONTINUATION_STUB}, call["messages"][0])
        self.assertEqual(3, len(call["messages"]))

    def test_stream_without_tools_omits_tools_argument(self) -> None:
        provider = self._make_provider(stream_events=[])
        self._collect(provider, ModelRequest("m", 10, "", [{"role": "user", "content": "hi"}]))
        self.assertNotIn("tools", provider._client.messages.calls[0])

    def test_stream_maps_sdk_errors(self) -> None:
        provider = self._make_provider(error=_status_error(anthropic.RateLimitError, 429))
        with self.assertRaises(BackendUnavailableError) as ctx:
            self._collect(provider, ModelRequest("m", 10, "", [{"role": "user", "content": "hi"}]))
        self.assertTrue(ctx.exception.retryable)

    def test_error_mapping(self) -> None:
        self.assertIsInstance(map_anthropic_error(_status_error(anthropic.AuthenticationError, 401)), BackendFatalError)
        self.assertIsInstance(map_anthropic_error(_status_error(anthropic.NotFoundError, 404)), BackendFatalError)

        overloaded = map_anthropic_error(_status_error(anthropic.InternalServerError, 529))
        self.assertTrue(overloaded.retryable)

        bad_request = map_anthropic_error(_status_error(anthropic.BadRequestError, 400))
        self.assertIsInstance(bad_request, BackendUnavailableError)
        self.assertFalse(bad_request.retryable)

        connection = map_anthropic_error(anthropic.APIConnectionError(request=_REQUEST))
        self.assertTrue(connection.retryable)

    def test_create_message(self) -> None:
        create_response = SimpleNamespace(
            usage=_usage(5, 3),
            content=[SimpleNamespace(text="summary "), SimpleNamespace(text="result")],
        )
        provider = self._make_provider(create_response=create_response)

        result = asyncio.run(provider.create_message("m", 4096, 0, [{"role": "user", "content": "summarize"}]))

        self.assertEqual("summary result", result)
        self.assertNotIn("stream", provider._client.messages.calls[0])

    def test_create_message_fatal_error_is_not_retried(self) -> None:
        provider = self._make_provider(error=_status_error(anthropic.AuthenticationError, 401))

        with self.assertRaises(BackendFatalError):
            asyncio.run(provider.create_message("m", 10, 0, [{"role": "user", "content": "x"}]))
        self.assertEqual(1, len(provider._client.messages.calls))


if __name__ == "__main__":
    unittest.main()
