# tools.py
# Tool abstraction and built-in tools.
# The harness resolves tools by name through the mapping built for one run
# and never calls the _tool_* functions directly.

import asyncio
import functools
import json
import logging
import re
import sys
from abc import ABC, abstractmethod
from html.parser import HTMLParser
from typing import Any, Callable

import httpx
from pydantic import ConfigDict, Field, ValidationError, create_model

from steploop.errors import (
    FinalAnswerSignal,
    InvalidArguments,
    ToolExecutionError,
    ToolTimeout,
    ToolUnavailable,
)
from steploop.models import ParamSpec, ToolDescriptor

logger = logging.getLogger(__name__)

MAX_OBSERVATION_CHARS = 30_000

_PY_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "object": dict,
    "array": list,
    "any": Any,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def truncate_observation(text: str, limit: int = MAX_OBSERVATION_CHARS) -> str:
    if len(text) <= limit:
        return text
    return (
        text[:limit]
        + f"\n....This content has been truncated due to the {limit} character limit....."
    )


def validate_arguments(descriptor: ToolDescriptor, arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Check arguments against the descriptor's parameter schema.

    Returns only the arguments the caller supplied, coerced to their declared
    types. Raises InvalidArguments with a message the model can act on.
    """
    if not isinstance(arguments, dict):
        raise InvalidArguments(f"Arguments for '{descriptor.name}' must be a JSON object.")

    # Parameter names are arbitrary strings (remote tools may use "_id" or
    # "model_config"), so fields get positional names and the real name as alias.
    fields: dict[str, Any] = {}
    for i, param in enumerate(descriptor.params):
        annotation = _PY_TYPES[param.type]
        if param.required:
            fields[f"arg_{i}"] = (annotation, Field(..., alias=param.name))
        else:
            fields[f"arg_{i}"] = (annotation | None, Field(None, alias=param.name))

    extra = "forbid" if descriptor.params else "allow"
    schema = create_model(
        "ToolArguments",
        __config__=ConfigDict(extra=extra),
        **fields,
    )
    try:
        validated = schema.model_validate(arguments)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            field = ".".join(str(part) for part in error["loc"]) or "<arguments>"
            if error["type"] == "missing":
                problems.append(f"missing required argument '{field}'")
            elif error["type"] == "extra_forbidden":
                problems.append(f"unexpected argument '{field}'")
            else:
                problems.append(f"argument '{field}': {error['msg']}")
        expected = json.dumps(descriptor.json_schema()["properties"])
        raise InvalidArguments(
            f"Invalid arguments for '{descriptor.name}': {'; '.join(problems)}. "
            f"Expected: {expected}"
        ) from exc
    return validated.model_dump(by_alias=True, exclude_unset=True)


def describe_tool(descriptor: ToolDescriptor) -> str:
    return (
        f"{descriptor.name}: {descriptor.description}\n"
        f"    Takes inputs: {json.dumps(descriptor.json_schema()['properties'])}"
    )


# ---------------------------------------------------------------------------
# Tool contract
# ---------------------------------------------------------------------------


class Tool(ABC):
    """
    Uniform capability contract: a descriptor plus an async execute().

    run() validates arguments first, then executes under a timeout, so every
    call either returns text or raises a ToolError subclass.
    """

    timeout: float | None = None

    def __init__(self, descriptor: ToolDescriptor) -> None:
        self.descriptor = descriptor

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def run(self, arguments: dict[str, Any], timeout: float | None = None) -> str:
        validated = validate_arguments(self.descriptor, arguments)
        limit = self.timeout if self.timeout is not None else timeout
        try:
            output = await asyncio.wait_for(self.execute(validated), limit)
        except TimeoutError as exc:
            raise ToolTimeout(f"Tool '{self.name}' did not finish within {limit:g}s.") from exc
        return truncate_observation(output)

    @abstractmethod
    async def execute(self, arguments: dict[str, Any]) -> str:
        ...


class FunctionTool(Tool):
    """Wraps a blocking function of the form fn(args) -> str."""

    def __init__(self, descriptor: ToolDescriptor, fn: Callable[[dict], str]) -> None:
        super().__init__(descriptor)
        self._fn = fn

    async def execute(self, arguments: dict[str, Any]) -> str:
        return await asyncio.to_thread(self._fn, arguments)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

SEARCH = ToolDescriptor(
    name="search",
    description=(
        "Performs a DuckDuckGo web search and returns the top results "
        "(title, snippet, source URL)."
    ),
    params=[ParamSpec(name="query", type="string", description="The search query to perform.")],
)


def _tool_search(args: dict) -> str:
    from ddgs import DDGS

    query = args.get("query", "").strip()
    if not query:
        raise InvalidArguments("Error: no query provided.")

    try:
        # Coerce the generator to a list to ensure actual execution
        results = list(DDGS().text(query, max_results=4))
    except Exception as e:
        raise ToolUnavailable(f"Search failed: {e}") from e

    if not results:
        return "No results found."

    lines = []
    for r in results:
        lines.append(f"[{r.get('title', 'No Title')}]\n{r.get('body', '')}\nSource: {r.get('href', '')}")
    return "\n\n".join(lines)


# ---------------------------------------------------------------------------
# Search APIs
#
# Keyed backends. The key is handed over when the tool is built (see
# build_tool); a tool built without one reports itself unavailable.
# ---------------------------------------------------------------------------

GOOGLE_SEARCH = ToolDescriptor(
    name="google_search",
    description="Performs a Google web search (via SerpAPI) and returns the top organic results.",
    params=[ParamSpec(name="query", type="string", description="The search query to perform.")],
)

EXA_SEARCH = ToolDescriptor(
    name="exa_search",
    description="Performs an Exa web search and returns the top results with their page text.",
    params=[ParamSpec(name="query", type="string", description="The query to search for.")],
)

TAVILY_SEARCH = ToolDescriptor(
    name="tavily_search",
    description="Performs a Tavily web search and returns a short answer followed by the top results.",
    params=[
        ParamSpec(name="query", type="string", description="The query to search for."),
        ParamSpec(
            name="topic",
            type="string",
            required=False,
            description="Restrict results to a topic: 'general' or 'news'.",
        ),
        ParamSpec(
            name="search_depth",
            type="string",
            required=False,
            description="'basic' or 'advanced'.",
        ),
    ],
)

_MAX_RESULT_CHARS = 2_000


def _search_api(tool: str, api_key: str | None, method: str, url: str, **kwargs: Any) -> Any:
    if not api_key:
        raise ToolUnavailable(f"{tool} has no API key configured.")
    try:
        response = httpx.request(method, url, timeout=20, **kwargs)
        response.raise_for_status()
    except httpx.TimeoutException as e:
        raise ToolTimeout(f"{tool} request timed out.") from e
    except httpx.HTTPStatusError as e:
        raise ToolExecutionError(f"{tool} → {e.response.status_code}: {e.response.text[:300]}") from e
    except httpx.TransportError as e:
        raise ToolUnavailable(f"Could not reach {tool}: {e}") from e
    try:
        return response.json()
    except ValueError as e:
        raise ToolExecutionError(f"{tool} returned a response that is not JSON.") from e


def _query(args: dict) -> str:
    query = args.get("query", "").strip()
    if not query:
        raise InvalidArguments("Error: no query provided.")
    return query


def _tool_google_search(args: dict, api_key: str | None = None) -> str:
    query = _query(args)
    data = _search_api(
        "google_search",
        api_key,
        "GET",
        "https://serpapi.com/search.json",
        params={"engine": "google", "q": query, "api_key": api_key},
    )
    results = data.get("organic_results") or []
    if not results:
        return f"No results found for query: {query}"

    lines = []
    for r in results[:10]:
        lines.append(f"[{r.get('title', 'No Title')}]({r.get('link', '')})\n{r.get('snippet', '')}")
    return "\n\n".join(lines)


def _tool_exa_search(args: dict, api_key: str | None = None) -> str:
    query = _query(args)
    data = _search_api(
        "exa_search",
        api_key,
        "POST",
        "https://api.exa.ai/search",
        headers={"x-api-key": api_key or ""},
        json={"query": query, "numResults": 3, "contents": {"text": True}},
    )
    results = data.get("results") or []
    if not results:
        return f"No results found for query: {query}"

    lines = []
    for r in results:
        text = (r.get("text") or "")[:_MAX_RESULT_CHARS]
        parts = [f"[{r.get('title') or 'No Title'}]({r.get('url') or ''})", text, r.get("summary") or ""]
        lines.append("\n".join(p for p in parts if p))
    return "\n\n".join(lines)


def _tool_tavily_search(args: dict, api_key: str | None = None) -> str:
    query = _query(args)
    body = {"query": query, "max_results": 10, "include_answer": True}
    for key in ("topic", "search_depth"):
        if args.get(key):
            body[key] = args[key]
    data = _search_api(
        "tavily_search",
        api_key,
        "POST",
        "https://api.tavily.com/search",
        headers={"Authorization": f"Bearer {api_key}"},
        json=body,
    )

    lines = []
    if data.get("answer"):
        lines.append(f"Answer: {data['answer']}")
    for r in data.get("results") or []:
        content = (r.get("content") or "")[:_MAX_RESULT_CHARS]
        lines.append(f"[{r.get('title', 'No Title')}]({r.get('url', '')})\n{content}")
    return "\n\n".join(lines) or f"No results found for query: {query}"


# ---------------------------------------------------------------------------
# Visit website
# ---------------------------------------------------------------------------

VISIT_WEBSITE = ToolDescriptor(
    name="visit_website",
    description="Visits a webpage at the given URL and returns its content as plain text.",
    params=[ParamSpec(name="url", type="string", description="The URL of the webpage to visit.")],
)


class _TextExtractor(HTMLParser):
    _SKIP = {"script", "style", "noscript", "head", "svg"}
    _BLOCK = {"p", "div", "br", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6", "section", "article"}

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []
        self._skipping = 0

    def handle_starttag(self, tag: str, attrs: list) -> None:
        if tag in self._SKIP:
            self._skipping += 1
        elif tag in self._BLOCK:
            self._parts.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP and self._skipping:
            self._skipping -= 1
        elif tag in self._BLOCK:
            self._parts.append("\n")

    def handle_data(self, data: str) -> None:
        if not self._skipping:
            self._parts.append(data)

    def text(self) -> str:
        raw = "".join(self._parts)
        raw = re.sub(r"[ \t\r\f\v]+", " ", raw)
        return re.sub(r"\n\s*\n+", "\n\n", raw).strip()


def html_to_text(html: str) -> str:
    parser = _TextExtractor()
    parser.feed(html)
    parser.close()
    return parser.text()


def _tool_visit_website(args: dict) -> str:
    url = args.get("url", "").strip()
    if not url:
        raise InvalidArguments("Error: no URL provided.")
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"

    try:
        response = httpx.get(url, timeout=20, follow_redirects=True)
        response.raise_for_status()
    except httpx.TimeoutException as e:
        raise ToolTimeout(f"Fetching {url} timed out.") from e
    except httpx.HTTPStatusError as e:
        raise ToolExecutionError(f"GET {url} → {e.response.status_code}") from e
    except httpx.TransportError as e:
        raise ToolUnavailable(f"Could not reach {url}: {e}") from e

    content_type = response.headers.get("content-type", "")
    if "html" in content_type:
        text = html_to_text(response.text)
    else:
        text = response.text.strip()
    return text or f"GET {url} → {response.status_code} (empty body)"


# ---------------------------------------------------------------------------
# Python interpreter
# ---------------------------------------------------------------------------

PYTHON_INTERPRETER = ToolDescriptor(
    name="python_interpreter",
    description=(
        "Executes Python code in a fresh interpreter and returns what it printed. "
        "Call final_answer(value) from the code to finish the task. "
        "Variables do not persist between calls."
    ),
    params=[ParamSpec(name="code", type="string", description="The Python code to run.")],
)

_FINAL_MARKER = "__steploop_final_answer__:"

_PRELUDE = f"""\
import json as _steploop_json
import sys as _steploop_sys


def final_answer(answer):
    print({_FINAL_MARKER!r} + _steploop_json.dumps(str(answer)), flush=True)
    _steploop_sys.exit(0)


"""


class PythonInterpreterTool(Tool):
    """Runs code in a subprocess. No isolation: the engine trusts its tools."""

    def __init__(self, python: str = sys.executable) -> None:
        super().__init__(PYTHON_INTERPRETER)
        self._python = python

    async def execute(self, arguments: dict[str, Any]) -> str:
        code = arguments["code"]
        proc = await asyncio.create_subprocess_exec(
            self._python,
            "-c",
            _PRELUDE + code,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        logs: list[str] = []
        for line in stdout.decode("utf-8", errors="replace").splitlines():
            if line.startswith(_FINAL_MARKER):
                raise FinalAnswerSignal(json.loads(line[len(_FINAL_MARKER):]))
            logs.append(line)

        if proc.returncode != 0:
            error = stderr.decode("utf-8", errors="replace").strip()
            raise ToolExecutionError(
                f"Code execution failed (exit {proc.returncode}):\n{error[-4000:]}"
            )

        output = "\n".join(logs).strip()
        return f"Execution logs:\n{output}" if output else "No output or logs generated"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

FINAL_ANSWER = ToolDescriptor(
    name="final_answer",
    description="Provides a final answer to the given problem.",
    params=[ParamSpec(name="answer", type="string", description="The final answer to the problem.")],
)


class FinalAnswerTool(Tool):
    """Reached only when final_answer was called with arguments that need checking."""

    def __init__(self) -> None:
        super().__init__(FINAL_ANSWER)

    async def execute(self, arguments: dict[str, Any]) -> str:
        raise FinalAnswerSignal(arguments["answer"])


def _keyed(descriptor: ToolDescriptor, fn: Callable[..., str]) -> Callable[..., Tool]:
    def factory(api_key: str | None = None) -> Tool:
        return FunctionTool(descriptor, functools.partial(fn, api_key=api_key))

    return factory


TOOLS: dict[str, Callable[..., Tool]] = {
    "search":             lambda: FunctionTool(SEARCH, _tool_search),
    "visit_website":      lambda: FunctionTool(VISIT_WEBSITE, _tool_visit_website),
    "python_interpreter": PythonInterpreterTool,
    "google_search":      _keyed(GOOGLE_SEARCH, _tool_google_search),
    "exa_search":         _keyed(EXA_SEARCH, _tool_exa_search),
    "tavily_search":      _keyed(TAVILY_SEARCH, _tool_tavily_search),
}

# Built-in tools whose factory takes an API key.
KEYED_TOOLS = frozenset({"google_search", "exa_search", "tavily_search"})


def build_tool(name: str, api_key: str | None = None) -> Tool:
    if name in KEYED_TOOLS:
        return TOOLS[name](api_key)
    return TOOLS[name]()
