# config.py
# Settings, the YAML configuration file, credentials and system prompts.
#
# Everything here is read once at transport start-up and handed to the
# engine as immutable values. The engine itself never looks at the
# environment.

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError, model_validator

from steploop.errors import ConfigurationError
from steploop.models import AgentConfig, AgentVariant, Dialect, RemoteSourceConfig, ToolDescriptor
from steploop.tools import TOOLS, describe_tool

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "servers.yaml"


# ---------------------------------------------------------------------------
# Process settings
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    config_path: Path = Path(DEFAULT_CONFIG_PATH)
    log_level: str = "INFO"
    api_key: SecretStr | None = Field(default=None, description="Bearer key required by the service.")
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "Settings":
        api_key = os.getenv("STEPLOOP_API_KEY")
        return cls(
            config_path=Path(os.getenv("STEPLOOP_CONFIG", DEFAULT_CONFIG_PATH)),
            log_level=os.getenv("STEPLOOP_LOG_LEVEL", "INFO").upper(),
            api_key=SecretStr(api_key) if api_key else None,
            host=os.getenv("STEPLOOP_HOST", "0.0.0.0"),
            port=int(os.getenv("STEPLOOP_PORT", "8080")),
        )


# ---------------------------------------------------------------------------
# Configuration file
# ---------------------------------------------------------------------------


class FileConfig(BaseModel):
    """Contents of servers.yaml."""

    servers: dict[str, RemoteSourceConfig] = Field(default_factory=dict)
    system_prompt: str | None = None
    agents: dict[str, AgentConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _name_agents(self) -> "FileConfig":
        # Agents are keyed by name in the file; the key wins over any name field.
        self.agents = {
            name: agent if agent.name == name else agent.model_copy(update={"name": name})
            for name, agent in self.agents.items()
        }
        return self


_RESERVED_KEYS = ("servers", "system_prompt", "agents")


def load_config(path: str | Path) -> FileConfig:
    """
    Load servers.yaml.

    Two layouts are accepted: an explicit `servers:` mapping, or server
    entries at the top level next to `system_prompt`. A missing file yields
    an empty configuration.

    Raises ConfigurationError if the file cannot be parsed or validated.
    """
    path = Path(path)
    if not path.exists():
        logger.info("No configuration file at %s; no remote tool sources configured.", path)
        return FileConfig()

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Error parsing YAML configuration file {path}: {exc}") from exc

    if data is None:
        return FileConfig()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping.")

    if "servers" not in data:
        data = {
            **{key: data[key] for key in _RESERVED_KEYS if key in data},
            "servers": {k: v for k, v in data.items() if k not in _RESERVED_KEYS},
        }

    try:
        config = FileConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration in {path}:\n{exc}") from exc
    config.agents = {name: resolve_credentials(agent) for name, agent in config.agents.items()}

    logger.info(
        "Loaded %s: %d remote source(s), %d agent(s).", path, len(config.servers), len(config.agents)
    )
    return config


# ---------------------------------------------------------------------------
# Agent configs from transport requests
# ---------------------------------------------------------------------------

AGENT_TYPES = {
    "function-calling": AgentVariant.TOOL_CALLING,
    "tool-calling": AgentVariant.TOOL_CALLING,
    "code": AgentVariant.CODE,
    "planning": AgentVariant.PLANNING,
    "delegating": AgentVariant.DELEGATING,
    "mcp": AgentVariant.TOOL_CALLING,
}


def make_agent_config(
    agent_type: str,
    tool_names: list[str],
    file_config: FileConfig,
    **fields: Any,
) -> AgentConfig:
    """
    Build an AgentConfig from the loose values a CLI or HTTP caller sends.

    Requested tool names may be built-in tools or remote source names. The
    "mcp" agent type uses every configured source when none is named.
    Fields passed as None keep their defaults.

    Raises ConfigurationError on an unknown agent type or tool name.
    """
    variant = AGENT_TYPES.get(agent_type)
    if variant is None:
        raise ConfigurationError(f"Unknown agent type '{agent_type}'. Choose from: {', '.join(AGENT_TYPES)}.")

    builtin = [name for name in tool_names if name in TOOLS]
    remote = [name for name in tool_names if name in file_config.servers and name not in TOOLS]
    unknown = [name for name in tool_names if name not in builtin and name not in remote]
    if unknown:
        available = sorted(TOOLS) + sorted(file_config.servers)
        raise ConfigurationError(f"Unknown tool(s) {unknown}. Available: {available}.")
    if agent_type == "mcp" and not remote:
        remote = list(file_config.servers)

    values = {key: value for key, value in fields.items() if value is not None}
    try:
        config = AgentConfig(
            variant=variant,
            tools=tuple(dict.fromkeys(builtin)),
            remote_sources=tuple(dict.fromkeys(remote)),
            **values,
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid agent configuration:\n{exc}") from exc
    return resolve_credentials(config)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

_KEY_BY_HOST = {
    "openai.com": "OPENAI_API_KEY",
    "googleapis.com": "GOOGLE_API_KEY",
    "groq.com": "GROQ_API_KEY",
    "anthropic.com": "ANTHROPIC_API_KEY",
    "openrouter.ai": "OPENROUTER_API_KEY",
}

_KEY_BY_DIALECT = {
    Dialect.OPENAI: "OPENAI_API_KEY",
    Dialect.GEMINI: "GOOGLE_API_KEY",
}


def resolve_api_key(base_url: str | None, dialect: Dialect = Dialect.OPENAI) -> str | None:
    """Pick the provider key from the environment by base URL, then by dialect."""
    if base_url:
        for host, variable in _KEY_BY_HOST.items():
            if host in base_url:
                return os.getenv(variable)
        if dialect is not Dialect.GEMINI:
            return None
    variable = _KEY_BY_DIALECT.get(dialect)
    return os.getenv(variable) if variable else None


_KEY_BY_TOOL = {
    "google_search": "SERPAPI_API_KEY",
    "exa_search": "EXA_API_KEY",
    "tavily_search": "TAVILY_API_KEY",
}


def resolve_credentials(config: AgentConfig) -> AgentConfig:
    """
    Fill in the model key and the keys of keyed tools from the environment.

    Values already present on the config win. A keyed tool without a key is
    still built; it reports itself unavailable when called.
    """
    update: dict[str, Any] = {}
    if config.api_key is None:
        api_key = resolve_api_key(config.base_url, config.dialect)
        if api_key:
            update["api_key"] = SecretStr(api_key)

    credentials = dict(config.tool_credentials)
    for tool_name in config.tools:
        variable = _KEY_BY_TOOL.get(tool_name)
        if variable is None or tool_name in credentials:
            continue
        value = os.getenv(variable)
        if value:
            credentials[tool_name] = SecretStr(value)
        else:
            logger.warning("%s is not set; the %s tool will be unavailable.", variable, tool_name)
    if credentials != config.tool_credentials:
        update["tool_credentials"] = credentials

    return config.model_copy(update=update) if update else config


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------

TOOL_CALLING_PROMPT = """\
You are an expert assistant who solves tasks step by step using tools.

At each step, briefly explain your reasoning, then call exactly one tool.
The result of the tool call comes back to you as an observation, and you
continue from there. If a tool fails, read the error, fix the arguments or
pick another tool, and try again.

If your interface does not support native tool calls, request one by writing:

<tool_call>{"name": "<tool_name>", "arguments": {<JSON arguments>}}</tool_call>

When you have the answer, call the final_answer tool with it. Never call a
tool that is not listed below, and never repeat a call with the exact same
arguments.

You can use these tools:
{{tool_descriptions}}

{{managed_agents_descriptions}}

The current time is {{current_time}}\
"""

CODE_PROMPT = """\
You are an expert assistant who solves tasks by writing Python code.

At each step, write a short Thought explaining your reasoning, then one code
block:

Thought: <your reasoning>
```py
<python code>
```

Each block runs in a fresh interpreter: variables and imports do not carry
over between steps, so print() whatever you need to see next. When you have
the answer, call final_answer(<answer>) inside a code block.

Apart from code, you can call one of these tools with
<tool_call>{"name": "<tool_name>", "arguments": {<JSON arguments>}}</tool_call>:
{{tool_descriptions}}

{{managed_agents_descriptions}}

The current time is {{current_time}}\
"""

MANAGED_AGENTS_HEADER = """\
You can also give tasks to team members. Calling a team member works like
calling a tool: its only argument is 'task', a long string explaining the
task in detail. These are the team members you can call:\
"""

DEFAULT_PROMPTS = {
    AgentVariant.TOOL_CALLING: TOOL_CALLING_PROMPT,
    AgentVariant.PLANNING: TOOL_CALLING_PROMPT,
    AgentVariant.DELEGATING: TOOL_CALLING_PROMPT,
    AgentVariant.CODE: CODE_PROMPT,
}


def render_system_prompt(
    template: str | None,
    variant: AgentVariant,
    tools: list[ToolDescriptor],
    delegates: dict[str, str] | None = None,
    now: datetime | None = None,
) -> str:
    """Fill the {{...}} placeholders of a system prompt template."""
    template = template or DEFAULT_PROMPTS[variant]
    tool_descriptions = "\n".join(f"- {describe_tool(t)}" for t in tools) or "(none)"

    if delegates:
        lines = [f"- {name}: {description}" for name, description in delegates.items()]
        managed = MANAGED_AGENTS_HEADER + "\n" + "\n".join(lines)
    else:
        managed = ""

    values: dict[str, Any] = {
        "tool_descriptions": tool_descriptions,
        "tool_names": ", ".join(t.name for t in tools),
        "managed_agents_descriptions": managed,
        "current_time": (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S"),
    }
    if "{{tool_descriptions}}" not in template and tools:
        template += "\n\nYou can use these tools:\n{{tool_descriptions}}"

    prompt = template
    for key, value in values.items():
        prompt = prompt.replace("{{" + key + "}}", value)
    return prompt.strip()
