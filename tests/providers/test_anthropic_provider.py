import asyncio
import unittest
from types import SimpleNamespace

import anthropic
import httpx

from omnitrix_agent.errors import TransportError
from omnitrix_agent.providers.anthropic_provider import AnthropicProvider, _to_anthropic_messages

from tests.providers.base import LIST_DIR_SPEC, message, tool_round_trip


class _FakeStreamContext:
    def __init__(self, events: list[object]):
        self._events = events

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def __aiter__(self):
        self._iter = iter(self._events)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class _FakeMessages:
    def __init__(self, stream_ctx=None, create_response=None, error: Exception | None = None):
        self._stream_ctx = stream_ctx
        self._create_response = create_response
        self._error = error
        self.calls: list[dict] = []

    def stream(self, **kwargs):
        self.calls.append(kwargs)
        return self._stream_ctx

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return self._create_response


class _FakeClient:
    def __init__(self, **kwargs):
        self.messages = _FakeMessages(**kwargs)

    async def close(self) -> None:
        pass


def _make_provider(**kwargs) -> tuple[AnthropicProvider, _FakeMessages]:
    provider = AnthropicProvider("sk-ant-test", "claude-sonnet-4-5", temperature=0.5, max_tokens=512)
    provider._client = _FakeClient(**kwargs)
    return provider, provider._client.messages


class ToAnthropicMessagesTests(unittest.TestCase):
    def test_system_and_tool_results(self) -> None:
        system, messages = _to_anthropic_messages(tool_round_trip())
        self.assertEqual("be brief", system)
        self.assertEqual(["user", "assistant", "user"], [m["role"] for m in messages])
        self.assertEqual(
            [{"type": "tool_use", "id": "call_1", "name": "list_dir", "input": {"dir_path": "."}}],
            messages[1]["content"],
        )
        self.assertEqual(
            [{"type": "tool_result", "tool_use_id": "call_1", "content": "Directory: ."}],
            messages[2]["content"],
        )

    def test_consecutive_tool_results_share_a_turn(self) -> None:
        _, messages = _to_anthropic_messages(
            [
                message("user", "go"),
                message("tool", "one", tool_call_id="a"),
                message("tool", "two", tool_call_id="b"),
            ]
        )
        self.assertEqual(2, len(messages))
        self.assertEqual(["a", "b"], [block["tool_use_id"] for block in messages[1]["content"]])


class AnthropicProviderTests(unittest.TestCase):
    def test_convert_tools(self) -> None:
        provider, _ = _make_provider()
        result = provider.convert_tools([LIST_DIR_SPEC])
        self.assertEqual("list_dir", result[0]["name"])
        self.assertEqual("List a directory", result[0]["description"])
        self.assertIn("properties", result[0]["input_schema"])

    def test_chat_text_and_tool_use(self) -> None:
        response = SimpleNamespace(
            id="msg_1",
            model="claude-sonnet-4-5",
            stop_reason="tool_use",
            usage=SimpleNamespace(input_tokens=10, output_tokens=5),
            content=[
                SimpleNamespace(type="text", text="Looking."),
                SimpleNamespace(type="tool_use", id="toolu_1", name="list_dir", input={"dir_path": "."}),
            ],
        )
        provider, fake = _make_provider(create_response=response)

        result = asyncio.run(provider.chat(tool_round_trip()[:2], [LIST_DIR_SPEC]))

        self.assertEqual("Looking.", result.content)
        self.assertEqual("tool_calls", result.finish_reason)
        self.assertEqual("toolu_1", result.tool_calls[0].id)
        self.assertEqual(15, result.usage.total_tokens)
        request = fake.calls[0]
        self.assertEqual("be brief", request["system"])
        self.assertEqual(512, request["max_tokens"])
        self.assertEqual("list_dir", request["tools"][0]["name"])

    def test_stop_reason_mapping(self) -> None:
        response = SimpleNamespace(
            stop_reason="max_tokens",
            usage=SimpleNamespace(input_tokens=1, output_tokens=1),
            content=[SimpleNamespace(type="text", text="cut")],
        )
        provider, _ = _make_provider(create_response=response)
        self.assertEqual("length", asyncio.run(provider.chat([message("user", "hi")], [])).finish_reason)

    def test_status_errors_become_transport_errors(self) -> None:
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        error = anthropic.APIStatusError(
            "rate limited",
            response=httpx.Response(429, request=request, text='{"error": "slow down"}'),
            body=None,
        )
        provider, _ = _make_provider(error=error)
        with self.assertRaises(TransportError) as ctx:
            asyncio.run(provider.chat([message("user", "hi")], []))
        self.assertEqual(429, ctx.exception.status_code)
        self.assertIn("slow down", ctx.exception.body)

    def test_connection_errors_become_transport_errors(self) -> None:
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        provider, _ = _make_provider(error=anthropic.APIConnectionError(request=request))
        with self.assertRaises(TransportError) as ctx:
            asyncio.run(provider.chat([message("user", "hi")], []))
        self.assertIsNone(ctx.exception.status_code)

    def test_stream_events(self) -> None:
        events = [
            SimpleNamespace(type="message_start", message=SimpleNamespace(usage=SimpleNamespace(input_tokens=9))),
            SimpleNamespace(type="content_block_start", index=0, content_block=SimpleNamespace(type="text", text="")),
            SimpleNamespace(type="content_block_delta", index=0, delta=SimpleNamespace(type="text_delta", text="Hel")),
            SimpleNamespace(type="content_block_delta", index=0, delta=SimpleNamespace(type="text_delta", text="lo")),
            SimpleNamespace(
                type="content_block_start",
                index=1,
                content_block=SimpleNamespace(type="tool_use", id="toolu_1", name="list_dir"),
            ),
            SimpleNamespace(
                type="content_block_delta",
                index=1,
                delta=SimpleNamespace(type="input_json_delta", partial_json='{"dir_path": "."}'),
            ),
            SimpleNamespace(
                type="message_delta",
                delta=SimpleNamespace(stop_reason="tool_use"),
                usage=SimpleNamespace(output_tokens=6),
            ),
            SimpleNamespace(type="message_stop"),
        ]
        provider, _ = _make_provider(stream_ctx=_FakeStreamContext(events))

        async def collect():
            return [chunk async for chunk in provider.stream_chat([message("user", "hi")], [LIST_DIR_SPEC])]

        chunks = asyncio.run(collect())

        self.assertEqual("Hello", "".join(c.delta for c in chunks))
        fragments = [f for c in chunks for f in c.tool_call_fragments]
        self.assertEqual("toolu_1", fragments[0].id)
        self.assertEqual('{"dir_path": "."}', "".join(f.arguments_delta for f in fragments))
        last = chunks[-1]
        self.assertTrue(last.done)
        self.assertEqual("tool_calls", last.finish_reason)
        self.assertEqual(9, last.usage.prompt_tokens)
        self.assertEqual(6, last.usage.completion_tokens)
