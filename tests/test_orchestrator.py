from unittest.mock import MagicMock, patch

import httpx
import pytest
from conftest import StubModel, action

from steploop.config import FileConfig
from steploop.errors import ConfigurationError, ModelAuthFailure
from steploop.models import (
    AgentConfig,
    AgentVariant,
    ObservationKind,
    RemoteSourceConfig,
    TerminationReason,
)
from steploop.orchestrator import DelegateTool, Team, builtin_tool_names, find_cycle


def scripted(**scripts):
    """A model factory handing each agent its own scripted StubModel."""
    models = {name: StubModel(script) for name, script in scripts.items()}
    return (lambda config: models[config.name]), models


def manager_and_researcher(**researcher):
    return {
        "manager": AgentConfig(variant=AgentVariant.DELEGATING, delegates=("researcher",)),
        "researcher": AgentConfig(description="Looks things up.", **researcher),
    }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def test_find_cycle():
    assert find_cycle({"a": ["b"], "b": ["c"], "c": []}) is None
    assert find_cycle({"a": ["b"], "b": ["c"], "c": ["a"]}) == ["a", "b", "c", "a"]
    assert find_cycle({"solo": ["solo"]}) == ["solo", "solo"]

@pytest.mark.parametrize(
    "agents",
    [
        {
            "a": AgentConfig(variant=AgentVariant.DELEGATING, delegates=("b",)),
            "b": AgentConfig(variant=AgentVariant.DELEGATING, delegates=("a",)),
        },
        {"self": AgentConfig(delegates=("self",))},
    ],
)
def test_delegation_cycle_rejected_before_any_model(agents):
    factory = MagicMock()
    with pytest.raises(ConfigurationError, match="Delegation cycle"):
        Team(agents, model_factory=factory)
    factory.assert_not_called()

@pytest.mark.parametrize(
    "agents, sources, message",
    [
        ({"a": AgentConfig(tools=("telepathy",))}, {}, "unknown tool"),
        ({"a": AgentConfig(remote_sources=("files",))}, {}, "unknown remote tool source"),
        ({"a": AgentConfig(delegates=("ghost",))}, {}, "unknown delegate"),
        ({"a": AgentConfig(max_steps=0)}, {}, "max_steps"),
        ({"a": AgentConfig(planning_interval=-1)}, {}, "negative"),
        ({"a": AgentConfig(variant=AgentVariant.PLANNING)}, {}, "planning_interval"),
        ({"a": AgentConfig(variant=AgentVariant.DELEGATING)}, {}, "delegate"),
    ],
)
def test_invalid_configurations(agents, sources, message):
    with pytest.raises(ConfigurationError, match=message):
        Team(agents, sources)

def test_delegate_may_not_shadow_builtin_tool():
    agents = {"a": AgentConfig(delegates=("search",)), "search": AgentConfig()}
    with pytest.raises(ConfigurationError, match="shadows"):
        Team(agents)

def test_duplicate_agent_names():
    with pytest.raises(ConfigurationError, match="Duplicate"):
        Team([AgentConfig(name="x"), AgentConfig(name="x")])

def test_agents_are_named_by_key():
    team = Team({"helper": AgentConfig(name="something-else")})
    assert team.agents["helper"].name == "helper"

def test_from_config_main_agent_wins():
    file_config = FileConfig(
        servers={"files": RemoteSourceConfig(command="srv")},
        agents={"helper": AgentConfig(), "main": AgentConfig(max_steps=2)},
    )
    team = Team.from_config(AgentConfig(name="main", max_steps=7, delegates=("helper",)), file_config)
    assert team.agents["main"].max_steps == 7
    assert set(team.agents) == {"helper", "main"}
    assert "files" in team.sources

@pytest.mark.asyncio
async def test_unknown_agent_name_at_run():
    team = Team({"a": AgentConfig()}, model_factory=MagicMock())
    with pytest.raises(ConfigurationError, match="No agent named 'b'"):
        await team.run("b", "task")

# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------

def test_code_variant_always_gets_interpreter():
    assert builtin_tool_names(AgentConfig(variant=AgentVariant.CODE)) == ["python_interpreter"]
    assert builtin_tool_names(AgentConfig(tools=("search", "search"))) == ["search"]

@pytest.mark.asyncio
async def test_open_wires_tools_and_prompt():
    factory, models = scripted(manager=[], researcher=[])
    team = Team(manager_and_researcher(), model_factory=factory)

    async with team.open("manager") as agent:
        assert isinstance(agent.tools["researcher"], DelegateTool)
        assert "final_answer" in agent.tools
        assert "- researcher: Looks things up." in agent.system_prompt
        assert "final_answer: Provides a final answer" in agent.system_prompt
        assert "{{" not in agent.system_prompt
        assert agent.client is models["manager"]

    assert models["manager"].closed

@pytest.mark.asyncio
async def test_custom_prompt_template():
    team = Team(
        {"a": AgentConfig(tools=("search",), system_prompt="Tools: {{tool_names}}")},
        model_factory=lambda config: StubModel([]),
    )
    async with team.open("a") as agent:
        assert agent.system_prompt.startswith("Tools: search, final_answer")

@pytest.mark.asyncio
@patch("steploop.tools.httpx.request")
async def test_keyed_tool_gets_key_from_config(mock_request):
    mock_request.return_value = httpx.Response(
        200, json={"results": []}, request=httpx.Request("POST", "https://api.exa.ai/search")
    )
    config = AgentConfig(tools=("exa_search",), tool_credentials={"exa_search": "exa-key"})
    team = Team({"a": config}, model_factory=lambda config: StubModel([]))

    async with team.open("a") as agent:
        await agent.tools["exa_search"].run({"query": "x"}, timeout=5)

    assert mock_request.call_args.kwargs["headers"] == {"x-api-key": "exa-key"}

# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delegation_counts_as_one_parent_step():
    factory, models = scripted(
        manager=[action("researcher", task="Find x."), "x is 1, according to the researcher."],
        researcher=[action("nope"), action("nope"), "x is 1"],
    )
    team = Team(manager_and_researcher(), model_factory=factory)

    result = await team.run("manager", "What is x?")

    assert result.reason is TerminationReason.SUCCESS
    assert [step.index for step in result.steps] == [0, 1]
    observation = result.steps[0].observation
    assert observation.kind is ObservationKind.OK
    assert observation.content == "x is 1"
    assert len(models["researcher"].calls) == 3
    assert models["researcher"].closed

@pytest.mark.asyncio
async def test_child_step_limit_reports_best_effort():
    factory, _ = scripted(
        manager=[action("researcher", task="Find x."), "Unclear."],
        researcher=[action("nope"), "maybe 1"],
    )
    team = Team(manager_and_researcher(max_steps=1), model_factory=factory)

    result = await team.run("manager", "What is x?")

    content = result.steps[0].observation.content
    assert "reached its limit of 1 steps" in content
    assert "maybe 1" in content

@pytest.mark.asyncio
async def test_child_fatal_error_is_a_tool_error():
    factory, _ = scripted(
        manager=[action("researcher", task="Find x."), "The researcher is broken."],
        researcher=[ModelAuthFailure("bad key")],
    )
    team = Team(manager_and_researcher(), model_factory=factory)

    result = await team.run("manager", "What is x?")

    assert result.reason is TerminationReason.SUCCESS
    observation = result.steps[0].observation
    assert observation.kind is ObservationKind.TOOL_ERROR
    assert "Agent 'researcher' failed" in observation.content
    assert "bad key" in observation.content

def test_delegate_timeout_covers_child_budget():
    team = Team(manager_and_researcher(max_steps=4, model_timeout=10, tool_timeout=5))
    tool = DelegateTool(team, team.agents["researcher"])
    assert tool.timeout == 60
    assert [p.name for p in tool.descriptor.params] == ["task"]
