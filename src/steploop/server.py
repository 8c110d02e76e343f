# server.py
# HTTP service: a thin caller of the engine.
#
#   GET  /health_check   liveness only, no auth
#   POST /run            run one task; JSON result, or NDJSON step stream
#
# Every request builds its own Team, so concurrent runs share nothing.

import asyncio
import json
import logging
import secrets
from typing import AsyncIterator

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from steploop import display
from steploop.config import FileConfig, Settings, load_config, make_agent_config
from steploop.errors import ConfigurationError, EngineError
from steploop.llm import build_model_client
from steploop.models import Dialect, Message, RunResult, StepRecord, TerminationReason
from steploop.orchestrator import ModelFactory, Team

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


# ---------------------------------------------------------------------------
# Wire contract
# ---------------------------------------------------------------------------


class RunTaskRequest(BaseModel):
    task: str = Field(..., min_length=1)
    model: str = "gpt-4.1-mini"
    base_url: str | None = None
    tools: list[str] = Field(default_factory=list, description="Built-in tool or remote source names.")
    max_steps: int | None = Field(default=None, ge=1)
    agent_type: str = "function-calling"
    planning_interval: int | None = Field(default=None, ge=0)
    dialect: Dialect = Dialect.OPENAI
    history: list[Message] = Field(default_factory=list)
    delegates: list[str] = Field(default_factory=list, description="Agents from the configuration file.")
    stream: bool = Field(default=False, description="Stream step records as NDJSON.")


class RunTaskResponse(BaseModel):
    agent: str
    final_answer: str | None
    reason: TerminationReason
    error_kind: str | None = None
    error: str | None = None
    steps: list[StepRecord]

    @classmethod
    def from_result(cls, result: RunResult) -> "RunTaskResponse":
        return cls(
            agent=result.agent,
            final_answer=result.final_answer,
            reason=result.reason,
            error_kind=result.error_kind,
            error=result.error,
            steps=result.steps,
        )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


def require_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> None:
    expected = request.app.state.settings.api_key
    if expected is None:
        return
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(), expected.get_secret_value().encode()
    ):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def _line(kind: str, **payload) -> str:
    return json.dumps({"type": kind, **payload}) + "\n"


async def stream_run(team: Team, agent: str, payload: RunTaskRequest) -> AsyncIterator[str]:
    """Yield one `step` line per StepRecord as it happens, then one `result` line."""
    queue: asyncio.Queue[StepRecord | None] = asyncio.Queue()
    run = asyncio.create_task(team.run(agent, payload.task, history=payload.history, on_step=queue.put_nowait))
    run.add_done_callback(lambda _: queue.put_nowait(None))
    try:
        while True:
            record = await queue.get()
            if record is None:
                break
            yield _line("step", step=record.model_dump(mode="json"))

        try:
            result = run.result()
        except EngineError as exc:
            logger.error("Run could not start: %s", exc)
            yield _line("error", detail=str(exc))
            return
        yield _line("result", result=RunTaskResponse.from_result(result).model_dump(mode="json"))
    finally:
        if not run.done():
            run.cancel()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    file_config: FileConfig | None = None,
    model_factory: ModelFactory = build_model_client,
) -> FastAPI:
    settings = settings or Settings.from_env()
    if file_config is None:
        file_config = load_config(settings.config_path)
    if settings.api_key is None:
        logger.warning("STEPLOOP_API_KEY is not set; the /run endpoint accepts unauthenticated requests.")

    app = FastAPI(title="steploop")
    app.state.settings = settings
    app.state.file_config = file_config
    app.state.model_factory = model_factory

    @app.get("/health_check")
    def health_check() -> dict:
        return {"status": "ok"}

    @app.post("/run", dependencies=[Depends(require_api_key)])
    async def run_task(payload: RunTaskRequest, request: Request):
        state = request.app.state
        try:
            agent = make_agent_config(
                payload.agent_type,
                payload.tools,
                state.file_config,
                model=payload.model,
                base_url=payload.base_url,
                dialect=payload.dialect,
                max_steps=payload.max_steps,
                planning_interval=payload.planning_interval,
                delegates=tuple(payload.delegates) or None,
            )
            team = Team.from_config(agent, state.file_config, model_factory=state.model_factory)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        logger.info("Run requested: agent_type=%s model=%s", payload.agent_type, payload.model)
        if payload.stream:
            return StreamingResponse(stream_run(team, agent.name, payload), media_type="application/x-ndjson")

        try:
            result = await team.run(agent.name, payload.task, history=payload.history)
        except EngineError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return RunTaskResponse.from_result(result)

    return app


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    display.configure_logging(settings.log_level)
    try:
        app = create_app(settings)
    except ConfigurationError as exc:
        display.halt(str(exc))
        raise SystemExit(2) from exc
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
