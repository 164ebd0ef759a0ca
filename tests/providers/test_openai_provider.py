import asyncio
import json
import unittest

import httpx

from omnitrix_agent.errors import ProtocolError, TransportError
from omnitrix_agent.providers.openai_provider import OpenAIProvider, _to_openai_messages

from tests.providers.base import LIST_DIR_SPEC, RecordingTransport, lines_response, message, tool_round_trip


def _sse(*frames: object) -> list[str]:
    return [f"data: {json.dumps(f) if not isinstance(f, str) else f}" for f in frames]


async def _drain(provider: OpenAIProvider, messages, tools) -> list:
    try:
        return [chunk async for chunk in provider.stream_chat(messages, tools)]
    finally:
        await provider.aclose()


class ToOpenAIMessagesTests(unittest.TestCase):
    def test_tool_round_trip(self) -> None:
        result = _to_openai_messages(tool_round_trip())
        self.assertEqual(["system", "user", "assistant", "tool"], [m["role"] for m in result])

        assistant = result[2]
        self.assertIsNone(assistant["content"])
        self.assertEqual("call_1", assistant["tool_calls"][0]["id"])
        self.assertEqual("function", assistant["tool_calls"][0]["type"])
        self.assertEqual({"dir_path": "."}, json.loads(assistant["tool_calls"][0]["function"]["arguments"]))

        self.assertEqual("call_1", result[3]["tool_call_id"])
        self.assertEqual("Directory: .", result[3]["content"])

    def test_plain_assistant_keeps_text(self) -> None:
        result = _to_openai_messages([message("assistant", "hi")])
        self.assertEqual("hi", result[0]["content"])
        self.assertNotIn("tool_calls", result[0])


class OpenAIChatTests(unittest.TestCase):
    def _provider(self, transport: httpx.MockTransport) -> OpenAIProvider:
        return OpenAIProvider("sk-test", "gpt-4o-mini", temperature=0.2, max_tokens=256, transport=transport)

    def _chat(self, provider: OpenAIProvider, messages, tools):
        async def run():
            try:
                return await provider.chat(messages, tools)
            finally:
                await provider.aclose()

        return asyncio.run(run())

    def test_chat_parses_tool_calls_and_usage(self) -> None:
        payload = {
            "id": "chatcmpl-1",
            "model": "gpt-4o-mini",
            "choices": [
                {
                    "finish_reason": "tool_calls",
                    "message": {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_9",
                                "type": "function",
                                "function": {"name": "list_dir", "arguments": '{"dir_path": "."}'},
                            }
                        ],
                    },
                }
            ],
            "usage": {"prompt_tokens": 30, "completion_tokens": 7},
        }
        transport = RecordingTransport(lambda request: httpx.Response(200, json=payload))
        response = self._chat(self._provider(transport), [message("user", "list files in .")], [LIST_DIR_SPEC])

        self.assertEqual("", response.content)
        self.assertEqual("tool_calls", response.finish_reason)
        self.assertEqual("call_9", response.tool_calls[0].id)
        self.assertEqual({"dir_path": "."}, response.tool_calls[0].arguments)
        self.assertEqual(37, response.usage.total_tokens)

        request = transport.requests[0]
        self.assertEqual("/v1/chat/completions", request.url.path)
        self.assertEqual("Bearer sk-test", request.headers["Authorization"])
        body = transport.bodies[0]
        self.assertEqual("gpt-4o-mini", body["model"])
        self.assertEqual(0.2, body["temperature"])
        self.assertFalse(body["stream"])
        self.assertEqual("list_dir", body["tools"][0]["function"]["name"])

    def test_non_success_status_raises_transport_error(self) -> None:
        transport = RecordingTransport(lambda request: httpx.Response(401, text='{"error": "bad key"}'))
        with self.assertRaises(TransportError) as ctx:
            self._chat(self._provider(transport), [message("user", "hi")], [])
        self.assertEqual(401, ctx.exception.status_code)
        self.assertIn("bad key", ctx.exception.body)
        self.assertIn("401", str(ctx.exception))

    def test_connection_failure_raises_transport_error(self) -> None:
        def fail(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with self.assertRaises(TransportError) as ctx:
            self._chat(self._provider(httpx.MockTransport(fail)), [message("user", "hi")], [])
        self.assertIsNone(ctx.exception.status_code)

    def test_empty_choices_is_a_protocol_error(self) -> None:
        transport = RecordingTransport(lambda request: httpx.Response(200, json={"choices": []}))
        with self.assertRaises(ProtocolError):
            self._chat(self._provider(transport), [message("user", "hi")], [])


class OpenAIStreamTests(unittest.TestCase):
    def _stream(self, lines: list[str]) -> tuple[list, RecordingTransport]:
        transport = RecordingTransport(lines_response(lines))
        provider = OpenAIProvider("sk-test", "gpt-4o-mini", transport=transport)
        return asyncio.run(_drain(provider, [message("user", "hi")], [])), transport

    def test_text_deltas_until_done(self) -> None:
        lines = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}},
            "[DONE]",
        )
        chunks, transport = self._stream([": keep-alive", ""] + lines)

        self.assertEqual("Hello", "".join(c.delta for c in chunks))
        self.assertTrue(chunks[-1].done)
        self.assertEqual(7, chunks[2].usage.total_tokens)
        self.assertTrue(transport.bodies[0]["stream"])
        self.assertTrue(transport.bodies[0]["stream_options"]["include_usage"])

    def test_malformed_frame_is_skipped(self) -> None:
        lines = _sse({"choices": [{"delta": {"content": "a"}}]}, "{broken", {"choices": [{"delta": {"content": "b"}}]}, "[DONE]")
        chunks, _ = self._stream(lines)
        self.assertEqual("ab", "".join(c.delta for c in chunks))
        self.assertTrue(all(c.error is None for c in chunks))

    def test_error_payload_ends_stream(self) -> None:
        lines = _sse({"choices": [{"delta": {"content": "a"}}]}, {"error": {"message": "overloaded"}}, {"choices": [{"delta": {"content": "never"}}]})
        chunks, _ = self._stream(lines)
        last = chunks[-1]
        self.assertTrue(last.done)
        self.assertEqual("overloaded", last.error)
        self.assertIn("overloaded", last.delta)
        self.assertNotIn("never", "".join(c.delta for c in chunks))

    def test_tool_call_fragments(self) -> None:
        lines = _sse(
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "list_dir", "arguments": ""}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"dir_path"'}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": ': "."}'}}]}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        )
        chunks, _ = self._stream(lines)
        fragments = [f for c in chunks for f in c.tool_call_fragments]
        self.assertEqual("call_1", fragments[0].id)
        self.assertEqual("list_dir", fragments[0].name)
        self.assertEqual('{"dir_path": "."}', "".join(f.arguments_delta for f in fragments))
        self.assertEqual("tool_calls", chunks[2].finish_reason)

    def test_missing_sentinel_still_finishes(self) -> None:
        chunks, _ = self._stream(_sse({"choices": [{"delta": {"content": "x"}}]}))
        self.assertTrue(chunks[-1].done)

    def test_stream_http_error(self) -> None:
        transport = RecordingTransport(lines_response(["upstream down"], status_code=503))
        provider = OpenAIProvider("sk-test", "gpt-4o-mini", transport=transport)
        with self.assertRaises(TransportError) as ctx:
            asyncio.run(_drain(provider, [message("user", "hi")], []))
        self.assertEqual(503, ctx.exception.status_code)
        self.assertIn("upstream down", ctx.exception.body)
