# orchestrator.py
# Multi-agent teams: configuration validation, agent assembly, delegation.
#
# A Team is the only place where Agents get built. It validates every
# AgentConfig up front (unknown names, delegation cycles) so that a bad
# configuration is rejected before any step runs, then wires built-in tools,
# remote tool sources and delegate agents into one tool mapping per agent.

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Callable, Iterable

from steploop.config import FileConfig, render_system_prompt
from steploop.errors import ConfigurationError, ToolExecutionError
from steploop.harness import Agent, ChunkCallback, StepCallback
from steploop.llm import ModelClient, build_model_client
from steploop.models import (
    AgentConfig,
    AgentVariant,
    Message,
    ParamSpec,
    RemoteSourceConfig,
    RunResult,
    TerminationReason,
    ToolDescriptor,
)
from steploop.remote import RemoteToolClient, RemoteToolProxy
from steploop.tools import FINAL_ANSWER, PYTHON_INTERPRETER, TOOLS, Tool, build_tool

logger = logging.getLogger(__name__)

ModelFactory = Callable[[AgentConfig], ModelClient]
RemoteFactory = Callable[[str, RemoteSourceConfig, float], RemoteToolClient]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def find_cycle(graph: dict[str, Iterable[str]]) -> list[str] | None:
    """Return one delegation cycle as a path (first node repeated at the end), or None."""
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        path.append(node)
        for child in graph.get(node, ()):
            if child in visiting:
                return path[path.index(child):] + [child]
            if child not in done:
                cycle = visit(child)
                if cycle:
                    return cycle
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for node in graph:
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return None


def builtin_tool_names(config: AgentConfig) -> list[str]:
    names = list(dict.fromkeys(config.tools))
    if config.variant is AgentVariant.CODE and PYTHON_INTERPRETER.name not in names:
        names.append(PYTHON_INTERPRETER.name)
    return names


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------


class DelegateTool(Tool):
    """
    Runs a sub-task on another agent of the team.

    The child gets its own transcript and step budget; the parent sees one
    action and one observation however many steps the child took.
    """

    def __init__(self, team: "Team", config: AgentConfig) -> None:
        super().__init__(
            ToolDescriptor(
                name=config.name,
                description=config.description,
                params=[
                    ParamSpec(
                        name="task",
                        type="string",
                        description="Long detailed description of the task, with all the context it needs.",
                    )
                ],
            )
        )
        self._team = team
        self._config = config
        self.timeout = config.max_steps * (config.model_timeout + config.tool_timeout)

    async def execute(self, arguments: dict[str, Any]) -> str:
        name = self._config.name
        logger.info("Delegating to '%s'.", name)
        result = await self._team.run(name, arguments["task"])
        logger.info("Delegate '%s' finished: %s after %d step(s).", name, result.reason.value, len(result.steps))

        if result.reason is TerminationReason.SUCCESS:
            return result.final_answer or ""
        if result.reason is TerminationReason.STEP_LIMIT_EXCEEDED:
            return (
                f"Agent '{name}' reached its limit of {self._config.max_steps} steps without finishing.\n"
                f"Best answer so far:\n{result.final_answer or '(none)'}"
            )
        if result.reason is TerminationReason.CANCELLED:
            raise asyncio.CancelledError()
        raise ToolExecutionError(f"Agent '{name}' failed: {result.error_kind}: {result.error}")


# ---------------------------------------------------------------------------
# Team
# ---------------------------------------------------------------------------


class Team:
    """
    A validated set of agents that may delegate to one another.

    Example:
        team = Team({"manager": manager, "researcher": researcher})
        result = await team.run("manager", "Summarize this week's AI news.")

    Raises ConfigurationError on construction if any agent is invalid.
    """

    def __init__(
        self,
        agents: dict[str, AgentConfig] | list[AgentConfig],
        sources: dict[str, RemoteSourceConfig] | None = None,
        system_prompt: str | None = None,
        model_factory: ModelFactory = build_model_client,
        remote_factory: RemoteFactory = RemoteToolClient,
    ) -> None:
        if isinstance(agents, dict):
            agents = [
                config if config.name == name else config.model_copy(update={"name": name})
                for name, config in agents.items()
            ]
        self.agents: dict[str, AgentConfig] = {}
        for config in agents:
            if config.name in self.agents:
                raise ConfigurationError(f"Duplicate agent name '{config.name}'.")
            self.agents[config.name] = config
        self.sources = dict(sources or {})
        self.system_prompt = system_prompt
        self.model_factory = model_factory
        self.remote_factory = remote_factory
        self.validate()

    @classmethod
    def from_config(cls, main: AgentConfig, file_config: FileConfig, **kwargs: Any) -> "Team":
        """A team of the file's agents plus `main`, which wins on a name clash."""
        agents = {**file_config.agents, main.name: main}
        return cls(agents, file_config.servers, file_config.system_prompt, **kwargs)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        reserved = set(TOOLS) | {FINAL_ANSWER.name}
        for name, config in self.agents.items():
            unknown = [t for t in config.tools if t not in TOOLS]
            if unknown:
                raise ConfigurationError(
                    f"Agent '{name}': unknown tool(s) {unknown}. Built-in tools: {sorted(TOOLS)}."
                )
            missing = [s for s in config.remote_sources if s not in self.sources]
            if missing:
                raise ConfigurationError(f"Agent '{name}': unknown remote tool source(s) {missing}.")
            for delegate in config.delegates:
                if delegate not in self.agents:
                    raise ConfigurationError(f"Agent '{name}': unknown delegate agent '{delegate}'.")
                if delegate in reserved:
                    raise ConfigurationError(f"Agent '{name}': delegate '{delegate}' shadows a built-in tool.")
            if config.max_steps < 1:
                raise ConfigurationError(f"Agent '{name}': max_steps must be at least 1.")
            if config.planning_interval is not None and config.planning_interval < 0:
                raise ConfigurationError(f"Agent '{name}': planning_interval cannot be negative.")
            if config.variant is AgentVariant.PLANNING and not config.planning_interval:
                raise ConfigurationError(f"Agent '{name}': the planning variant needs a planning_interval.")
            if config.variant is AgentVariant.DELEGATING and not config.delegates:
                raise ConfigurationError(f"Agent '{name}': the delegating variant needs at least one delegate.")

        cycle = find_cycle({name: config.delegates for name, config in self.agents.items()})
        if cycle:
            raise ConfigurationError(f"Delegation cycle: {' → '.join(cycle)}.")

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def _config(self, name: str) -> AgentConfig:
        try:
            return self.agents[name]
        except KeyError:
            raise ConfigurationError(f"No agent named '{name}'. Known agents: {sorted(self.agents)}.") from None

    async def _remote_tools(
        self, config: AgentConfig, stack: AsyncExitStack, taken: set[str]
    ) -> list[Tool]:
        tools: list[Tool] = []
        for source in config.remote_sources:
            client = self.remote_factory(source, self.sources[source], config.tool_timeout)
            await stack.enter_async_context(client)
            before = len(tools)
            for descriptor in await client.list_tools():
                exposed = descriptor.name
                if exposed in taken:
                    exposed = f"{source}__{descriptor.name}"
                if exposed in taken:
                    logger.warning("Skipping remote tool '%s' from '%s': name already in use.", descriptor.name, source)
                    continue
                taken.add(exposed)
                tools.append(
                    RemoteToolProxy(client, descriptor.model_copy(update={"name": exposed}), descriptor.name)
                )
            logger.info("Remote tool source '%s' contributed %d tool(s).", source, len(tools) - before)
        return tools

    @asynccontextmanager
    async def open(self, name: str) -> AsyncIterator[Agent]:
        """
        Build a ready-to-run Agent, with its remote sources connected.
        Everything the agent opened is closed on exit.
        """
        config = self._config(name)
        async with AsyncExitStack() as stack:
            tools: list[Tool] = []
            for tool_name in builtin_tool_names(config):
                key = config.tool_credentials.get(tool_name)
                tools.append(build_tool(tool_name, key.get_secret_value() if key else None))
            taken = {tool.name for tool in tools} | {FINAL_ANSWER.name} | set(config.delegates)
            tools += await self._remote_tools(config, stack, taken)

            delegates: dict[str, str] = {}
            for delegate in config.delegates:
                child = self.agents[delegate]
                tools.append(DelegateTool(self, child))
                delegates[delegate] = child.description

            prompt_tools = [t.descriptor for t in tools if not isinstance(t, DelegateTool)] + [FINAL_ANSWER]
            system_prompt = render_system_prompt(
                config.system_prompt or self.system_prompt,
                config.variant,
                prompt_tools,
                delegates,
            )

            client = self.model_factory(config)
            stack.push_async_callback(client.aclose)
            yield Agent(config, client, tools, system_prompt)

    async def run(
        self,
        name: str,
        task: str,
        history: list[Message] | None = None,
        on_step: StepCallback | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> RunResult:
        async with self.open(name) as agent:
            return await agent.run(task, history=history, on_step=on_step, on_chunk=on_chunk)
