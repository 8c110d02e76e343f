import asyncio

import pytest

from steploop.harness import Agent
from steploop.llm import ModelClient, RetryPolicy
from steploop.models import Action, AgentConfig, Dialect, RawCompletion
from steploop.tools import SEARCH, FunctionTool


class StubModel(ModelClient):
    """
    Scripted model client.

    Each call pops the next script entry: a string is plain text, a
    RawCompletion is returned as-is, an exception is raised.
    """

    dialect = Dialect.OPENAI

    def __init__(self, script, **kwargs):
        kwargs.setdefault("retry", RetryPolicy(max_attempts=1, base_delay=0))
        super().__init__("stub-model", **kwargs)
        self.script = list(script)
        self.calls = []
        self.closed = False

    async def _request(self, transcript, tools):
        self.calls.append((list(transcript), list(tools)))
        if not self.script:
            raise AssertionError("model called more often than scripted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return RawCompletion(text=item)
        return item

    async def _stream_request(self, transcript, tools):
        raw = await self._request(transcript, tools)
        for word in raw.text.split(" "):
            await asyncio.sleep(0)
            yield word + " "
        yield raw

    async def aclose(self):
        self.closed = True


def action(tool, call_id=None, **arguments):
    return RawCompletion(actions=[Action(tool=tool, arguments=arguments, call_id=call_id)])


def search_tool(calls=None):
    def _search(args):
        if calls is not None:
            calls.append(args)
        return f"results for {args['query']}"

    return FunctionTool(SEARCH, _search)


@pytest.fixture
def make_agent():
    def _make(script, tools=None, planner=None, **config):
        client = script if isinstance(script, ModelClient) else StubModel(script)
        agent_config = AgentConfig(name="tester", **config)
        agent = Agent(
            agent_config,
            client,
            [search_tool()] if tools is None else tools,
            "You are a test agent.",
            planner=planner,
        )
        return agent, client

    return _make
