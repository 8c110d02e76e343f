import json

import httpx
import pytest
from openai import AsyncOpenAI

from steploop.errors import ModelAuthFailure, ModelMalformedResponse, ModelTransientFailure
from steploop.grammar import CodeGrammar
from steploop.llm import (
    GeminiClient,
    ModelClient,
    OllamaTextClient,
    OpenAIChatClient,
    RetryPolicy,
    build_model_client,
    to_gemini_contents,
    to_openai_messages,
    to_text_messages,
)
from steploop.models import (
    Action,
    ActionRequest,
    AgentConfig,
    AgentVariant,
    Dialect,
    FinalText,
    Message,
    RawCompletion,
    Role,
    TerminationReason,
)
from steploop.tools import SEARCH

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0)

TRANSCRIPT = [
    Message(role=Role.SYSTEM, content="system prompt"),
    Message(role=Role.USER, content="New task:\nfind x"),
    Message(
        role=Role.ASSISTANT,
        content="Searching.",
        action=Action(tool="search", arguments={"query": "x"}, call_id="call_0"),
    ),
    Message(role=Role.TOOL, content="x is 1", tool_call_id="call_0", tool_name="search"),
]


def openai_client(handler, **kwargs):
    sdk = AsyncOpenAI(
        api_key="test-key",
        base_url="http://llm.test/v1",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return OpenAIChatClient("gpt-test", client=sdk, retry=NO_WAIT, **kwargs)


def completion(message):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "gpt-test",
        "choices": [{"index": 0, "finish_reason": "stop", "message": {"role": "assistant", **message}}],
    }


def sse(*events):
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events) + "data: [DONE]\n\n"
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode())


def delta_chunk(delta):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "gpt-test",
        "choices": [{"index": 0, "delta": delta, "finish_reason": None}],
    }


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

def test_retry_delays_grow_and_cap():
    policy = RetryPolicy(base_delay=0.5, multiplier=2, max_delay=3)
    assert [policy.delay(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 3]

# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def test_openai_messages_carry_tool_calls():
    messages = to_openai_messages(TRANSCRIPT)
    assert messages[2]["tool_calls"][0] == {
        "id": "call_0",
        "type": "function",
        "function": {"name": "search", "arguments": '{"query": "x"}'},
    }
    assert messages[3] == {"role": "tool", "tool_call_id": "call_0", "content": "x is 1"}

def test_text_messages_render_actions_inline():
    messages = to_text_messages(TRANSCRIPT)
    assert messages[2]["content"] == (
        'Searching.\n<tool_call>{"name": "search", "arguments": {"query": "x"}}</tool_call>'
    )
    assert messages[3] == {"role": "user", "content": "Observation:\nx is 1"}

def test_text_messages_render_code_blocks_for_code_agents():
    transcript = [
        Message(
            role=Role.ASSISTANT,
            content="Compute.",
            action=Action(tool="python_interpreter", arguments={"code": "print(1)"}, call_id="call_0"),
        )
    ]
    assert to_text_messages(transcript, code_style=True)[0]["content"] == "Compute.\n```py\nprint(1)\n```"

def test_gemini_contents_native():
    system, contents = to_gemini_contents(TRANSCRIPT, native=True)
    assert system == {"parts": [{"text": "system prompt"}]}
    assert contents[1] == {
        "role": "model",
        "parts": [{"text": "Searching."}, {"functionCall": {"name": "search", "args": {"query": "x"}}}],
    }
    assert contents[2]["parts"][0]["functionResponse"] == {"name": "search", "response": {"content": "x is 1"}}

# ---------------------------------------------------------------------------
# OpenAI dialect
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_openai_tool_call_round_trip():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json=completion(
                {
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_abc",
                            "type": "function",
                            "function": {"name": "search", "arguments": '{"query": "rust"}'},
                        }
                    ],
                }
            ),
        )

    client = openai_client(handler)
    response = await client.complete(TRANSCRIPT, [SEARCH])

    assert seen["url"] == "http://llm.test/v1/chat/completions"
    assert seen["body"]["tools"][0]["function"]["name"] == "search"
    assert seen["body"]["messages"][3]["role"] == "tool"
    assert isinstance(response, ActionRequest)
    assert response.action == Action(tool="search", arguments={"query": "rust"}, call_id="call_abc")

@pytest.mark.asyncio
async def test_openai_without_tools_sends_plain_messages():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=completion({"content": "Plan: 1. search"}))

    response = await openai_client(handler).complete(TRANSCRIPT, [])
    assert "tools" not in seen["body"]
    assert all(m["role"] != "tool" for m in seen["body"]["messages"])
    assert response == FinalText(text="Plan: 1. search")

@pytest.mark.asyncio
async def test_openai_bad_arguments_become_parse_error():
    def handler(request):
        call = {"id": "c1", "type": "function", "function": {"name": "search", "arguments": "{not json"}}
        return httpx.Response(200, json=completion({"content": None, "tool_calls": [call]}))

    response = await openai_client(handler).complete(TRANSCRIPT, [SEARCH])
    assert response.action.parse_error is not None

@pytest.mark.asyncio
async def test_openai_auth_failure_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    with pytest.raises(ModelAuthFailure):
        await openai_client(handler).complete(TRANSCRIPT, [SEARCH])
    assert len(calls) == 1

@pytest.mark.asyncio
async def test_openai_server_error_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json=completion({"content": "finally"}))

    response = await openai_client(handler).complete(TRANSCRIPT, [SEARCH])
    assert response == FinalText(text="finally")
    assert len(calls) == 3

@pytest.mark.asyncio
async def test_openai_bad_request_is_malformed():
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "bad schema"}})

    with pytest.raises(ModelMalformedResponse):
        await openai_client(handler).complete(TRANSCRIPT, [SEARCH])

@pytest.mark.asyncio
async def test_openai_streaming_accumulates_tool_call_fragments():
    def handler(request):
        return sse(
            delta_chunk({"role": "assistant", "content": "Let me "}),
            delta_chunk({"content": "check."}),
            delta_chunk(
                {
                    "tool_calls": [
                        {
                            "index": 0,
                            "id": "call_s",
                            "type": "function",
                            "function": {"name": "search", "arguments": '{"qu'},
                        }
                    ]
                }
            ),
            delta_chunk({"tool_calls": [{"index": 0, "function": {"arguments": 'ery": "x"}'}}]}),
        )

    chunks = []
    response = await openai_client(handler).complete_streaming(TRANSCRIPT, [SEARCH], chunks.append)

    assert chunks == ["Let me ", "check."]
    assert response.action == Action(tool="search", arguments={"query": "x"}, call_id="call_s")
    assert response.text == "Let me check."

class TrackingStream(httpx.AsyncByteStream):
    def __init__(self, body):
        self.body = body
        self.closed = False

    async def __aiter__(self):
        yield self.body

    async def aclose(self):
        self.closed = True

@pytest.mark.asyncio
async def test_openai_stream_is_closed_when_the_observer_fails():
    body = "".join(
        f"data: {json.dumps(delta_chunk({'content': text}))}\n\n" for text in ("one ", "two")
    ) + "data: [DONE]\n\n"
    stream = TrackingStream(body.encode())

    def handler(request):
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=stream)

    def on_chunk(text):
        raise RuntimeError("observer went away")

    with pytest.raises(RuntimeError, match="observer went away"):
        await openai_client(handler).complete_streaming(TRANSCRIPT, [SEARCH], on_chunk)
    assert stream.closed

# ---------------------------------------------------------------------------
# Gemini dialect
# ---------------------------------------------------------------------------

def gemini(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiClient(
        "gemini-2.0-flash",
        base_url="http://gemini.test/v1beta",
        api_key="g-key",
        http_client=http,
        retry=NO_WAIT,
        **kwargs,
    )

@pytest.mark.asyncio
async def test_gemini_function_call():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {
                            "role": "model",
                            "parts": [{"functionCall": {"name": "search", "args": {"query": "moon"}}}],
                        }
                    }
                ]
            },
        )

    response = await gemini(handler).complete(TRANSCRIPT, [SEARCH])

    assert seen["path"] == "/v1beta/models/gemini-2.0-flash:generateContent"
    assert seen["key"] == "g-key"
    assert seen["body"]["tools"][0]["functionDeclarations"][0]["name"] == "search"
    assert seen["body"]["systemInstruction"] == {"parts": [{"text": "system prompt"}]}
    assert response.action.tool == "search"
    assert response.action.arguments == {"query": "moon"}

@pytest.mark.asyncio
async def test_gemini_no_candidates_is_malformed():
    def handler(request):
        return httpx.Response(200, json={"promptFeedback": {"blockReason": "SAFETY"}})

    with pytest.raises(ModelMalformedResponse, match="SAFETY"):
        await gemini(handler).complete(TRANSCRIPT, [SEARCH])

@pytest.mark.asyncio
async def test_gemini_rate_limit_exhausts_retries():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429, json={"error": {"message": "quota"}})

    with pytest.raises(ModelTransientFailure):
        await gemini(handler).complete(TRANSCRIPT, [SEARCH])
    assert len(calls) == NO_WAIT.max_attempts

@pytest.mark.asyncio
async def test_gemini_streaming():
    def handler(request):
        assert request.url.path.endswith(":streamGenerateContent")
        assert request.url.params["alt"] == "sse"
        events = [
            {"candidates": [{"content": {"parts": [{"text": "The answer "}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "is 4."}]}}]},
        ]
        body = "".join(f"data: {json.dumps(e)}\r\n\r\n" for e in events)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode())

    chunks = []
    response = await gemini(handler).complete_streaming(TRANSCRIPT, [SEARCH], chunks.append)
    assert chunks == ["The answer ", "is 4."]
    assert response == FinalText(text="The answer is 4.")

# ---------------------------------------------------------------------------
# Plain-text dialect
# ---------------------------------------------------------------------------

def ollama(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaTextClient("llama3", base_url="http://ollama.test/v1", http_client=http, retry=NO_WAIT, **kwargs)

@pytest.mark.asyncio
async def test_ollama_parses_actions_from_text():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        text = 'Thought: look it up\n<tool_call>{"name": "search", "arguments": {"query": "q"}}</tool_call>'
        return httpx.Response(200, json={"message": {"role": "assistant", "content": text}, "done": True})

    response = await ollama(handler).complete(TRANSCRIPT, [SEARCH])

    assert seen["url"] == "http://ollama.test/api/chat"
    assert seen["body"]["stream"] is False
    assert "tools" not in seen["body"]
    assert seen["body"]["messages"][3]["content"] == "Observation:\nx is 1"
    assert response.action.tool == "search"
    assert response.text == "look it up"

@pytest.mark.asyncio
async def test_ollama_streaming_until_done():
    def handler(request):
        lines = [
            {"message": {"content": "Hel"}, "done": False},
            {"message": {"content": "lo"}, "done": False},
            {"message": {"content": ""}, "done": True},
        ]
        return httpx.Response(200, content="\n".join(json.dumps(l) for l in lines).encode())

    chunks = []
    response = await ollama(handler).complete_streaming(TRANSCRIPT, [], chunks.append)
    assert chunks == ["Hel", "lo"]
    assert response == FinalText(text="Hello")

@pytest.mark.asyncio
async def test_ollama_undecodable_body_is_malformed():
    def handler(request):
        return httpx.Response(200, content=b"<html>proxy error</html>")

    with pytest.raises(ModelMalformedResponse):
        await ollama(handler).complete(TRANSCRIPT, [])

@pytest.mark.asyncio
async def test_connection_errors_are_transient():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ModelTransientFailure):
        await ollama(handler).complete(TRANSCRIPT, [])
    assert len(calls) == 3

@pytest.mark.asyncio
async def test_undecodable_transfer_is_malformed_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.DecodingError("bad gzip stream", request=request)

    with pytest.raises(ModelMalformedResponse, match="DecodingError"):
        await gemini(handler).complete(TRANSCRIPT, [SEARCH])
    assert len(calls) == 1

@pytest.mark.asyncio
async def test_redirect_loop_while_streaming_is_malformed():
    def handler(request):
        raise httpx.TooManyRedirects("redirect loop", request=request)

    with pytest.raises(ModelMalformedResponse, match="TooManyRedirects"):
        await gemini(handler).complete_streaming(TRANSCRIPT, [SEARCH], lambda text: None)

@pytest.mark.asyncio
async def test_invalid_url_is_malformed():
    def handler(request):
        raise httpx.InvalidURL("Invalid non-printable ASCII character in URL")

    with pytest.raises(ModelMalformedResponse, match="InvalidURL"):
        await ollama(handler).complete(TRANSCRIPT, [])

@pytest.mark.asyncio
async def test_http_library_errors_end_the_run_as_fatal(make_agent):
    def handler(request):
        raise httpx.DecodingError("bad gzip stream", request=request)

    agent, _ = make_agent(gemini(handler))
    result = await agent.run("Anything.")

    assert result.reason is TerminationReason.FATAL_ERROR
    assert result.error_kind == "ModelMalformedResponse"

# ---------------------------------------------------------------------------
# Streaming retries
# ---------------------------------------------------------------------------

class FlakyStream(ModelClient):
    dialect = Dialect.TEXT

    def __init__(self, fail_after_text):
        super().__init__("flaky", retry=NO_WAIT)
        self.fail_after_text = fail_after_text
        self.attempts = 0

    async def _request(self, transcript, tools):
        raise NotImplementedError

    async def _stream_request(self, transcript, tools):
        self.attempts += 1
        if self.fail_after_text:
            yield "partial"
        if self.attempts == 1:
            raise ModelTransientFailure("connection reset")
        yield "ok"
        yield RawCompletion(text="ok")

@pytest.mark.asyncio
async def test_stream_retried_before_first_chunk():
    client = FlakyStream(fail_after_text=False)
    response = await client.complete_streaming([], [], lambda text: None)
    assert response == FinalText(text="ok")
    assert client.attempts == 2

@pytest.mark.asyncio
async def test_stream_not_retried_after_output():
    client = FlakyStream(fail_after_text=True)
    chunks = []
    with pytest.raises(ModelTransientFailure):
        await client.complete_streaming([], [], chunks.append)
    assert chunks == ["partial"]
    assert client.attempts == 1

# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def test_build_model_client_picks_dialect_and_grammar():
    client = build_model_client(
        AgentConfig(
            dialect=Dialect.GEMINI,
            variant=AgentVariant.CODE,
            model="gemini-2.0-flash",
            api_key="g-key",
            max_retries=5,
        )
    )
    assert isinstance(client, GeminiClient)
    assert isinstance(client.grammar, CodeGrammar)
    assert client.api_key == "g-key"
    assert client.retry.max_attempts == 5

def test_build_model_client_ignores_the_environment(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "from-env")
    client = build_model_client(AgentConfig(dialect=Dialect.GEMINI))
    assert client.api_key is None

def test_build_model_client_prefers_explicit_key():
    client = build_model_client(AgentConfig(dialect=Dialect.TEXT, api_key="explicit"))
    assert isinstance(client, OllamaTextClient)
    assert client.api_key == "explicit"
    assert client.base_url == "http://localhost:11434"
