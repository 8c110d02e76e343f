# llm.py
# Model client: one contract over three provider dialects.
#
#   openai  chat completions with native tool calls (AsyncOpenAI)
#   gemini  generateContent with functionDeclarations (httpx)
#   text    Ollama /api/chat, actions parsed from plain text (httpx)
#
# Every dialect returns a RawCompletion which the agent's grammar turns into
# a ModelResponse. Transient failures are retried here; auth and malformed
# responses propagate immediately.

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable

import httpx
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field

from steploop.errors import (
    ModelAuthFailure,
    ModelError,
    ModelMalformedResponse,
    ModelTransientFailure,
)
from steploop.grammar import CodeGrammar, ToolCallGrammar
from steploop.models import (
    Action,
    AgentConfig,
    AgentVariant,
    Dialect,
    Message,
    ModelResponse,
    PartialChunk,
    RawCompletion,
    ResponseEnd,
    Role,
    ToolDescriptor,
)
from steploop.tools import PYTHON_INTERPRETER

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for ModelTransientFailure."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=8.0, ge=0)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)


# ---------------------------------------------------------------------------
# Transcript serialization
# ---------------------------------------------------------------------------


def render_action(action: Action, code_style: bool = False) -> str:
    """Write an action back in the textual form the grammars accept."""
    if code_style and action.tool == PYTHON_INTERPRETER.name and "code" in action.arguments:
        return f"```py\n{action.arguments['code']}\n```"
    payload = json.dumps({"name": action.tool, "arguments": action.arguments}, ensure_ascii=False)
    return f"<tool_call>{payload}</tool_call>"


def to_text_messages(transcript: list[Message], code_style: bool = False) -> list[dict]:
    """Role/content messages for backends without native tool calls."""
    messages: list[dict] = []
    for message in transcript:
        if message.role is Role.TOOL:
            messages.append({"role": "user", "content": f"Observation:\n{message.content}"})
        elif message.role is Role.ASSISTANT and message.action is not None:
            parts = [message.content, render_action(message.action, code_style)]
            messages.append({"role": "assistant", "content": "\n".join(p for p in parts if p)})
        else:
            messages.append({"role": message.role.value, "content": message.content})
    return messages


def to_openai_messages(transcript: list[Message]) -> list[dict]:
    messages: list[dict] = []
    for message in transcript:
        if message.role is Role.TOOL:
            messages.append(
                {"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content}
            )
        elif message.role is Role.ASSISTANT and message.action is not None:
            messages.append(
                {
                    "role": "assistant",
                    "content": message.content or None,
                    "tool_calls": [
                        {
                            "id": message.action.call_id,
                            "type": "function",
                            "function": {
                                "name": message.action.tool,
                                "arguments": json.dumps(message.action.arguments),
                            },
                        }
                    ],
                }
            )
        else:
            messages.append({"role": message.role.value, "content": message.content})
    return messages


def to_gemini_contents(transcript: list[Message], native: bool) -> tuple[dict | None, list[dict]]:
    """Split a transcript into (systemInstruction, contents)."""
    system_parts: list[dict] = []
    contents: list[dict] = []

    if not native:
        for entry in to_text_messages(transcript):
            if entry["role"] == "system":
                system_parts.append({"text": entry["content"]})
            else:
                role = "model" if entry["role"] == "assistant" else "user"
                contents.append({"role": role, "parts": [{"text": entry["content"]}]})
    else:
        for message in transcript:
            if message.role is Role.SYSTEM:
                system_parts.append({"text": message.content})
            elif message.role is Role.TOOL:
                contents.append(
                    {
                        "role": "user",
                        "parts": [
                            {
                                "functionResponse": {
                                    "name": message.tool_name,
                                    "response": {"content": message.content},
                                }
                            }
                        ],
                    }
                )
            elif message.role is Role.ASSISTANT:
                parts: list[dict] = []
                if message.content:
                    parts.append({"text": message.content})
                if message.action is not None:
                    parts.append(
                        {"functionCall": {"name": message.action.tool, "args": message.action.arguments}}
                    )
                contents.append({"role": "model", "parts": parts or [{"text": ""}]})
            else:
                contents.append({"role": "user", "parts": [{"text": message.content}]})

    system = {"parts": system_parts} if system_parts else None
    return system, contents


def _decode_arguments(name: str, raw: str | dict | None, call_id: str | None) -> Action:
    """Provider arguments arrive as a JSON string; bad JSON is kept as a parse error."""
    if isinstance(raw, dict):
        return Action(tool=name, arguments=raw, call_id=call_id)
    if not raw or not raw.strip():
        return Action(tool=name, arguments={}, call_id=call_id)
    try:
        arguments = json.loads(raw, strict=False)
    except json.JSONDecodeError as exc:
        return Action(tool=name, call_id=call_id, parse_error=f"arguments are not valid JSON: {exc}")
    if not isinstance(arguments, dict):
        return Action(tool=name, call_id=call_id, parse_error="arguments must be a JSON object")
    return Action(tool=name, arguments=arguments, call_id=call_id)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def raise_for_status(response: httpx.Response) -> None:
    """Map an HTTP error status onto the model error taxonomy."""
    code = response.status_code
    if code < 400:
        return
    detail = f"HTTP {code} from {response.request.url}: {response.text[:500]}"
    if code in (401, 403):
        raise ModelAuthFailure(detail)
    if code == 429 or code >= 500:
        raise ModelTransientFailure(detail)
    raise ModelMalformedResponse(detail)


def map_openai_error(exc: openai.OpenAIError) -> ModelError:
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ModelAuthFailure(str(exc))
    if isinstance(exc, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        return ModelTransientFailure(str(exc))
    if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
        return ModelTransientFailure(str(exc))
    return ModelMalformedResponse(str(exc))


# ---------------------------------------------------------------------------
# Client contract
# ---------------------------------------------------------------------------


class ModelClient(ABC):
    """
    complete() blocks for a whole response; stream() yields PartialChunks
    followed by exactly one ResponseEnd. Both interpret the raw output with
    the agent's grammar.

    Subclasses implement _request() and _stream_request(). The latter yields
    text fragments and finishes with the assembled RawCompletion.
    """

    dialect: Dialect

    def __init__(
        self,
        model: str,
        *,
        grammar: ToolCallGrammar | CodeGrammar | None = None,
        temperature: float = 0.5,
        max_tokens: int = 4500,
        timeout: float = 60.0,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.model = model
        self.grammar = grammar or ToolCallGrammar()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.retry = retry or RetryPolicy()

    @property
    def code_style(self) -> bool:
        return isinstance(self.grammar, CodeGrammar)

    # ------------------------------------------------------------------
    # Dialect hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _request(self, transcript: list[Message], tools: list[ToolDescriptor]) -> RawCompletion:
        ...

    @abstractmethod
    def _stream_request(
        self, transcript: list[Message], tools: list[ToolDescriptor]
    ) -> AsyncIterator[str | RawCompletion]:
        ...

    async def aclose(self) -> None:
        pass

    async def __aenter__(self) -> "ModelClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def _backoff(self, attempt: int, exc: ModelTransientFailure) -> None:
        delay = self.retry.delay(attempt)
        logger.warning(
            "Model call failed (%s); attempt %d/%d, retrying in %.1fs.",
            exc,
            attempt,
            self.retry.max_attempts,
            delay,
        )
        await asyncio.sleep(delay)

    async def complete(self, transcript: list[Message], tools: list[ToolDescriptor]) -> ModelResponse:
        attempt = 0
        while True:
            attempt += 1
            try:
                try:
                    raw = await asyncio.wait_for(self._request(transcript, tools), self.timeout)
                except TimeoutError as exc:
                    raise ModelTransientFailure(f"Model call exceeded {self.timeout:g}s.") from exc
            except ModelTransientFailure as exc:
                if attempt >= self.retry.max_attempts:
                    raise
                await self._backoff(attempt, exc)
                continue
            return self.grammar.interpret(raw)

    async def stream(
        self, transcript: list[Message], tools: list[ToolDescriptor]
    ) -> AsyncIterator[PartialChunk | ResponseEnd]:
        """Single attempt. The sequence cannot be restarted."""
        raw: RawCompletion | None = None
        async with aclosing(self._stream_request(transcript, tools)) as items:
            async for item in items:
                if isinstance(item, RawCompletion):
                    raw = item
                elif item:
                    yield PartialChunk(text=item)
        if raw is None:
            raise ModelMalformedResponse("Stream ended without a complete response.")
        yield ResponseEnd(response=self.grammar.interpret(raw))

    async def complete_streaming(
        self,
        transcript: list[Message],
        tools: list[ToolDescriptor],
        on_chunk: Callable[[str], None],
    ) -> ModelResponse:
        """
        Forward each fragment to on_chunk and return the assembled response.

        A transient failure is retried only while nothing has been emitted;
        once the observer has seen text, replaying it would duplicate output.
        """
        attempt = 0
        while True:
            attempt += 1
            emitted = False
            try:
                try:
                    async with asyncio.timeout(self.timeout):
                        async with aclosing(self.stream(transcript, tools)) as events:
                            async for event in events:
                                if isinstance(event, PartialChunk):
                                    emitted = True
                                    on_chunk(event.text)
                                else:
                                    return event.response
                    raise ModelMalformedResponse("Stream ended without an end-of-response marker.")
                except TimeoutError as exc:
                    raise ModelTransientFailure(f"Model stream exceeded {self.timeout:g}s.") from exc
            except ModelTransientFailure as exc:
                if emitted or attempt >= self.retry.max_attempts:
                    raise
                await self._backoff(attempt, exc)


# ---------------------------------------------------------------------------
# OpenAI-compatible
# ---------------------------------------------------------------------------


class OpenAIChatClient(ModelClient):
    dialect = Dialect.OPENAI

    def __init__(
        self,
        model: str,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        client: AsyncOpenAI | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        self._owns_client = client is None
        self._client = client or AsyncOpenAI(
            base_url=base_url,
            api_key=api_key or "",
            max_retries=0,
            timeout=self.timeout,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.close()

    def _payload(self, transcript: list[Message], tools: list[ToolDescriptor]) -> dict:
        native = bool(tools) and not self.code_style
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(transcript) if native else to_text_messages(transcript, self.code_style),
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if native:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.json_schema(),
                    },
                }
                for tool in tools
            ]
        return payload

    async def _request(self, transcript: list[Message], tools: list[ToolDescriptor]) -> RawCompletion:
        try:
            response = await self._client.chat.completions.create(**self._payload(transcript, tools))
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc

        if not response.choices:
            raise ModelMalformedResponse("Response contained no choices.")
        message = response.choices[0].message
        actions = [
            _decode_arguments(call.function.name, call.function.arguments, call.id)
            for call in (message.tool_calls or [])
            if getattr(call, "function", None) is not None
        ]
        return RawCompletion(text=message.content or "", actions=actions)

    async def _stream_request(
        self, transcript: list[Message], tools: list[ToolDescriptor]
    ) -> AsyncIterator[str | RawCompletion]:
        text: list[str] = []
        # Tool call fragments keyed by their index in the choice.
        calls: dict[int, dict[str, str]] = {}
        try:
            stream = await self._client.chat.completions.create(
                **self._payload(transcript, tools), stream=True
            )
            async with stream:
                async for chunk in stream:
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    if delta.content:
                        text.append(delta.content)
                        yield delta.content
                    for fragment in delta.tool_calls or []:
                        call = calls.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                        if fragment.id:
                            call["id"] = fragment.id
                        if fragment.function is not None:
                            call["name"] += fragment.function.name or ""
                            call["arguments"] += fragment.function.arguments or ""
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc

        actions = [
            _decode_arguments(call["name"], call["arguments"], call["id"] or None)
            for _, call in sorted(calls.items())
            if call["name"]
        ]
        yield RawCompletion(text="".join(text), actions=actions)


# ---------------------------------------------------------------------------
# Shared httpx plumbing
# ---------------------------------------------------------------------------


class _HttpModelClient(ModelClient):
    default_base_url: str

    def __init__(
        self,
        model: str,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(model, **kwargs)
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.api_key = api_key
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self.timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post_json(self, url: str, body: dict) -> Any:
        try:
            response = await self._http.post(url, json=body, headers=self._headers())
        except httpx.TransportError as exc:
            raise ModelTransientFailure(f"{type(exc).__name__} calling {url}: {exc}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ModelMalformedResponse(f"{type(exc).__name__} calling {url}: {exc}") from exc
        raise_for_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise ModelMalformedResponse(f"Response from {url} is not JSON.") from exc

    async def _stream_lines(self, url: str, body: dict) -> AsyncIterator[str]:
        try:
            async with self._http.stream("POST", url, json=body, headers=self._headers()) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise_for_status(response)
                async for line in response.aiter_lines():
                    if line.strip():
                        yield line
        except httpx.TransportError as exc:
            raise ModelTransientFailure(f"{type(exc).__name__} streaming {url}: {exc}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ModelMalformedResponse(f"{type(exc).__name__} streaming {url}: {exc}") from exc


def _load_json_line(line: str) -> dict:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ModelMalformedResponse(f"Undecodable stream line: {line[:200]}") from exc
    if not isinstance(data, dict):
        raise ModelMalformedResponse(f"Unexpected stream line: {line[:200]}")
    return data


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class GeminiClient(_HttpModelClient):
    dialect = Dialect.GEMINI
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        return headers

    def _url(self, method: str) -> str:
        model = self.model.removeprefix("models/")
        return f"{self.base_url}/models/{model}:{method}"

    def _body(self, transcript: list[Message], tools: list[ToolDescriptor]) -> dict:
        native = bool(tools) and not self.code_style
        system, contents = to_gemini_contents(transcript, native)
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": self.temperature, "maxOutputTokens": self.max_tokens},
        }
        if system is not None:
            body["systemInstruction"] = system
        if native:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.json_schema()}
                        for t in tools
                    ]
                }
            ]
        return body

    @staticmethod
    def _parts(data: dict, strict: bool) -> list[dict]:
        candidates = data.get("candidates") or []
        if not candidates:
            if strict:
                feedback = data.get("promptFeedback") or data.get("error") or "no candidates"
                raise ModelMalformedResponse(f"Gemini returned no candidates: {feedback}")
            return []
        return (candidates[0].get("content") or {}).get("parts") or []

    @staticmethod
    def _collect(parts: list[dict], text: list[str], actions: list[Action]) -> str:
        fragment = ""
        for part in parts:
            if "functionCall" in part:
                call = part["functionCall"]
                actions.append(_decode_arguments(call.get("name", ""), call.get("args") or {}, call.get("id")))
            elif part.get("text"):
                fragment += part["text"]
        text.append(fragment)
        return fragment

    async def _request(self, transcript: list[Message], tools: list[ToolDescriptor]) -> RawCompletion:
        data = await self._post_json(self._url("generateContent"), self._body(transcript, tools))
        if not isinstance(data, dict):
            raise ModelMalformedResponse("Gemini response is not a JSON object.")
        text: list[str] = []
        actions: list[Action] = []
        self._collect(self._parts(data, strict=True), text, actions)
        return RawCompletion(text="".join(text), actions=actions)

    async def _stream_request(
        self, transcript: list[Message], tools: list[ToolDescriptor]
    ) -> AsyncIterator[str | RawCompletion]:
        url = self._url("streamGenerateContent") + "?alt=sse"
        text: list[str] = []
        actions: list[Action] = []
        async with aclosing(self._stream_lines(url, self._body(transcript, tools))) as lines:
            async for line in lines:
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                if payload == "[DONE]":
                    break
                fragment = self._collect(self._parts(_load_json_line(payload), strict=False), text, actions)
                if fragment:
                    yield fragment
        yield RawCompletion(text="".join(text), actions=actions)


# ---------------------------------------------------------------------------
# Plain text (Ollama)
# ---------------------------------------------------------------------------


class OllamaTextClient(_HttpModelClient):
    """No native tool calls: tools live in the system prompt, actions in the text."""

    dialect = Dialect.TEXT
    default_base_url = "http://localhost:11434"

    def __init__(self, model: str, **kwargs: Any) -> None:
        super().__init__(model, **kwargs)
        self.base_url = self.base_url.removesuffix("/v1")

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _body(self, transcript: list[Message], stream: bool) -> dict:
        return {
            "model": self.model,
            "messages": to_text_messages(transcript, self.code_style),
            "stream": stream,
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
        }

    async def _request(self, transcript: list[Message], tools: list[ToolDescriptor]) -> RawCompletion:
        data = await self._post_json(f"{self.base_url}/api/chat", self._body(transcript, stream=False))
        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            raise ModelMalformedResponse(f"Ollama response has no message: {str(data)[:200]}")
        return RawCompletion(text=message.get("content") or "")

    async def _stream_request(
        self, transcript: list[Message], tools: list[ToolDescriptor]
    ) -> AsyncIterator[str | RawCompletion]:
        text: list[str] = []
        done = False
        url = f"{self.base_url}/api/chat"
        async with aclosing(self._stream_lines(url, self._body(transcript, stream=True))) as lines:
            async for line in lines:
                data = _load_json_line(line)
                if "error" in data:
                    raise ModelMalformedResponse(f"Ollama stream error: {data['error']}")
                fragment = (data.get("message") or {}).get("content") or ""
                if fragment:
                    text.append(fragment)
                    yield fragment
                if data.get("done"):
                    done = True
                    break
        if not done:
            raise ModelTransientFailure("Ollama stream closed before the done marker.")
        yield RawCompletion(text="".join(text))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

CLIENTS: dict[Dialect, type[ModelClient]] = {
    Dialect.OPENAI: OpenAIChatClient,
    Dialect.GEMINI: GeminiClient,
    Dialect.TEXT:   OllamaTextClient,
}


def build_model_client(config: AgentConfig, **overrides: Any) -> ModelClient:
    """
    Construct the dialect client an AgentConfig asks for.
    The key comes from the config only; see config.resolve_credentials.
    """
    cls = CLIENTS[config.dialect]
    kwargs: dict[str, Any] = {
        "base_url": config.base_url,
        "api_key": config.api_key.get_secret_value() if config.api_key is not None else None,
        "grammar": CodeGrammar() if config.variant is AgentVariant.CODE else ToolCallGrammar(),
        "temperature": config.temperature,
        "max_tokens": config.max_tokens,
        "timeout": config.model_timeout,
        "retry": RetryPolicy(max_attempts=config.max_retries),
    }
    kwargs.update(overrides)
    return cls(config.model, **kwargs)
