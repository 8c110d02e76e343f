# run.py
# CLI entry point. Flags, config and wiring only; no engine logic lives here.
#
# Reads one task per line, runs it to termination and prints the result.
# Type 'exit' to quit.

import argparse
import asyncio
import json

from dotenv import load_dotenv

from steploop import display
from steploop.config import AGENT_TYPES, Settings, load_config, make_agent_config
from steploop.errors import EngineError
from steploop.orchestrator import Team, builtin_tool_names
from steploop.models import Dialect, StepRecord


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="steploop", description="Run tasks with a ReAct agent.")
    parser.add_argument("-a", "--agent-type", choices=list(AGENT_TYPES), default="function-calling")
    parser.add_argument("--agent", help="Run a named agent from the configuration file instead.")
    parser.add_argument(
        "-l", "--tools", nargs="*", default=["search", "visit_website"],
        help="Built-in tools and/or remote tool source names.",
    )
    parser.add_argument("-d", "--dialect", choices=[d.value for d in Dialect], default=Dialect.OPENAI.value)
    parser.add_argument("-m", "--model-id", default="gpt-4.1-mini")
    parser.add_argument("-b", "--base-url", default=None)
    parser.add_argument("-k", "--api-key", default=None)
    parser.add_argument("--max-steps", type=int, default=10)
    parser.add_argument("-p", "--planning-interval", type=int, default=None)
    parser.add_argument("-c", "--config", default=None, help="Path to servers.yaml.")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("-s", "--stream", action="store_true", help="Print model output as it arrives.")
    parser.add_argument("--log-file", default=None, help="Append every step record to this JSONL file.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = parse_args(argv)
    settings = Settings.from_env()
    display.configure_logging(args.log_level or settings.log_level)

    try:
        file_config = load_config(args.config or settings.config_path)
        if args.agent:
            if args.agent not in file_config.agents:
                raise EngineError(f"No agent named '{args.agent}' in the configuration file.")
            agent = file_config.agents[args.agent]
        else:
            agent = make_agent_config(
                args.agent_type,
                args.tools,
                file_config,
                model=args.model_id,
                base_url=args.base_url,
                api_key=args.api_key,
                dialect=args.dialect,
                max_steps=args.max_steps,
                planning_interval=args.planning_interval,
                stream=args.stream,
            )
        team = Team.from_config(agent, file_config)
    except EngineError as exc:
        display.halt(str(exc))
        raise SystemExit(2) from exc

    display.banner(agent, builtin_tool_names(agent) + list(agent.remote_sources) + list(agent.delegates))
    streaming = agent.stream

    log_file = open(args.log_file, "a", encoding="utf-8") if args.log_file else None
    try:
        while True:
            try:
                task = display.read_task().strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not task:
                continue
            if task.lower() == "exit":
                break

            display.prompt_received(task)

            def on_step(record: StepRecord) -> None:
                display.step_record(record, show_thought=not streaming)
                if log_file is not None:
                    log_file.write(json.dumps({"task": task, "step": record.model_dump(mode="json")}) + "\n")
                    log_file.flush()

            try:
                result = asyncio.run(
                    team.run(
                        agent.name,
                        task,
                        on_step=on_step,
                        on_chunk=display.chunk if streaming else None,
                    )
                )
            except KeyboardInterrupt:
                display.halt("Run cancelled.")
                continue
            except EngineError as exc:
                display.halt(str(exc))
                continue

            display.run_summary(result)
            display.outcome(result)
    finally:
        if log_file is not None:
            log_file.close()


if __name__ == "__main__":
    main()
