# harness.py
# Step loop (ReAct agent).
#
# The Agent is the kernel. The model and the tools are passive responders:
# this class owns all control flow, the transcript and the audit trail.
#
# Control flow, once per step:
#   plan? → reason (model call) → act (tool) → observe → next step
#   terminating on a final answer, the step limit, a model failure or
#   cancellation.
#
# Nothing here prints. Transports observe a run through on_step / on_chunk.

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from steploop.errors import FinalAnswerSignal, ModelError, ToolError
from steploop.llm import ModelClient
from steploop.models import (
    Action,
    AgentConfig,
    FinalText,
    Message,
    ModelResponse,
    Observation,
    ObservationKind,
    Role,
    RunResult,
    StepRecord,
    StepTiming,
    TerminationReason,
    ToolDescriptor,
)
from steploop.planner import Planner
from steploop.tools import FINAL_ANSWER, FinalAnswerTool, Tool, truncate_observation

logger = logging.getLogger(__name__)

RETRY_HINT = (
    "Now let's retry: take care not to repeat previous errors! "
    "If you have retried several times, try a completely different approach."
)

STEP_LIMIT_PROMPT = """\
You have run out of steps for this task. Using everything above, give your \
best final answer to the task now, in plain text and without calling any tool.

Task: {task}\
"""

StepCallback = Callable[[StepRecord], None]
ChunkCallback = Callable[[int, str], None]


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


class RunState:
    """Mutable state of one run. Owned by exactly one Agent.run() call."""

    def __init__(self, task: str, max_steps: int, planning_interval: int | None) -> None:
        self.task = task
        self.max_steps = max_steps
        self.planning_interval = planning_interval or 0
        self.transcript: list[Message] = []
        self.steps: list[StepRecord] = []
        self.terminated = False

    @property
    def step_counter(self) -> int:
        return len(self.steps)

    def planning_due(self) -> bool:
        k = self.step_counter
        return self.planning_interval > 0 and k > 0 and k % self.planning_interval == 0

    def append(self, message: Message) -> None:
        self.transcript.append(message)

    def record(self, step: StepRecord) -> None:
        if step.index != self.step_counter:
            raise RuntimeError(f"Step {step.index} recorded out of order (expected {self.step_counter}).")
        self.steps.append(step)

    def result(self, agent: str, reason: TerminationReason, **fields) -> RunResult:
        self.terminated = True
        return RunResult(
            agent=agent,
            task=self.task,
            reason=reason,
            steps=list(self.steps),
            transcript=list(self.transcript),
            **fields,
        )


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class Agent:
    """
    Runs tasks to termination against one model client and a fixed tool set.

    The tool mapping is built once here; actions are resolved by name only.
    An Agent holds no per-run state, so sequential runs are independent.

    Example:
        async with team.open("researcher") as agent:
            result = await agent.run("Who won the 2022 World Cup?")
    """

    def __init__(
        self,
        config: AgentConfig,
        client: ModelClient,
        tools: list[Tool],
        system_prompt: str,
        planner: Planner | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.system_prompt = system_prompt
        self.tools: dict[str, Tool] = {}
        for tool in tools:
            if tool.name in self.tools:
                raise ValueError(f"Duplicate tool name '{tool.name}'.")
            self.tools[tool.name] = tool
        self.tools.setdefault(FINAL_ANSWER.name, FinalAnswerTool())

        if planner is None and config.planning_interval:
            planner = Planner(client)
        self.planner = planner

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def descriptors(self) -> list[ToolDescriptor]:
        return [tool.descriptor for tool in self.tools.values()]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        task: str,
        history: list[Message] | None = None,
        on_step: StepCallback | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> RunResult:
        """
        Run one task to termination.

        Always returns a RunResult: model failures and cancellation end the
        run with the matching reason and whatever steps completed.
        """
        state = RunState(task, self.config.max_steps, self.config.planning_interval)
        state.append(Message(role=Role.SYSTEM, content=self.system_prompt))
        for message in history or []:
            state.append(message)
        state.append(Message(role=Role.USER, content=f"New task:\n{task}"))

        logger.info("[%s] Task received (max %d steps).", self.name, state.max_steps)

        try:
            while state.step_counter < state.max_steps:
                record = await self._step(state, on_chunk)
                state.record(record)
                if on_step is not None:
                    on_step(record)
                if record.final_answer is not None:
                    logger.info("[%s] Final answer after %d step(s).", self.name, state.step_counter)
                    return state.result(self.name, TerminationReason.SUCCESS, final_answer=record.final_answer)

            logger.warning("[%s] Step limit of %d reached.", self.name, state.max_steps)
            answer = None
            if self.config.final_answer_on_limit:
                answer = await self._best_effort_answer(state)
            return state.result(self.name, TerminationReason.STEP_LIMIT_EXCEEDED, final_answer=answer)

        except ModelError as exc:
            logger.error(
                "[%s] Model failure at step %d: %s: %s",
                self.name,
                state.step_counter,
                type(exc).__name__,
                exc,
            )
            return state.result(
                self.name,
                TerminationReason.FATAL_ERROR,
                error_kind=type(exc).__name__,
                error=str(exc),
            )

        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
            logger.warning("[%s] Run cancelled after %d step(s).", self.name, state.step_counter)
            return state.result(self.name, TerminationReason.CANCELLED)

    # ------------------------------------------------------------------
    # One step
    # ------------------------------------------------------------------

    async def _step(self, state: RunState, on_chunk: ChunkCallback | None) -> StepRecord:
        index = state.step_counter
        started_at = datetime.now(timezone.utc)
        t0 = time.perf_counter()
        logger.debug("[%s] Step %d", self.name, index)

        plan = None
        if self.planner is not None and state.planning_due():
            plan = await self._plan(state)

        response = await self._reason(state, index, on_chunk)

        def timing() -> StepTiming:
            return StepTiming(started_at=started_at, duration=time.perf_counter() - t0)

        if isinstance(response, FinalText):
            warning = None
            if response.malformed:
                warning = "Model output matched neither plain text nor an action; accepted as final answer."
                logger.warning("[%s] %s", self.name, warning)
            state.append(Message(role=Role.ASSISTANT, content=response.text))
            return StepRecord(
                index=index,
                final_answer=response.text,
                plan=plan,
                warning=warning,
                timing=timing(),
            )

        action = response.action
        if action.call_id is None:
            action = action.model_copy(update={"call_id": f"call_{index}"})
        logger.info("[%s] Step %d → %s %s", self.name, index, action.tool, action.arguments)

        final_answer = None
        try:
            observation = await self._act(action)
        except FinalAnswerSignal as signal:
            final_answer = str(signal.answer)
            observation = Observation(tool=action.tool, content=final_answer)

        # Both messages land together, so an interrupted action leaves no
        # dangling tool call in the transcript.
        state.append(Message(role=Role.ASSISTANT, content=response.text, action=action))
        state.append(
            Message(
                role=Role.TOOL,
                content=observation.content,
                tool_call_id=action.call_id,
                tool_name=action.tool,
            )
        )
        logger.info("[%s] Step %d observation: %s", self.name, index, observation.kind.value)

        return StepRecord(
            index=index,
            thought=response.text,
            action=action,
            observation=observation,
            final_answer=final_answer,
            plan=plan,
            timing=timing(),
        )

    async def _plan(self, state: RunState) -> str | None:
        logger.info("[%s] Planning before step %d.", self.name, state.step_counter)
        try:
            plan = await self.planner.plan(state.transcript, self.descriptors)
        except ModelError as exc:
            logger.warning("[%s] Planning failed (%s: %s); continuing without a new plan.", self.name, type(exc).__name__, exc)
            return None
        state.append(Message(role=Role.ASSISTANT, content=f"[PLAN]:\n{plan}"))
        return plan

    async def _reason(self, state: RunState, index: int, on_chunk: ChunkCallback | None) -> ModelResponse:
        if on_chunk is None and not self.config.stream:
            return await self.client.complete(state.transcript, self.descriptors)

        def forward(text: str) -> None:
            if on_chunk is not None:
                on_chunk(index, text)

        return await self.client.complete_streaming(state.transcript, self.descriptors, forward)

    async def _act(self, action: Action) -> Observation:
        """Resolve and execute one action. Every tool failure becomes an Observation."""
        tool = self.tools.get(action.tool)
        if tool is None:
            available = ", ".join(sorted(self.tools))
            return self._error(
                action.tool,
                ObservationKind.UNKNOWN_TOOL,
                f"Unknown tool '{action.tool}'. Available tools: {available}.",
            )
        if action.parse_error is not None:
            return self._error(
                action.tool,
                ObservationKind.INVALID_ARGUMENTS,
                f"Invalid arguments for '{action.tool}': {action.parse_error}.",
            )

        try:
            output = await tool.run(action.arguments, timeout=self.config.tool_timeout)
        except ToolError as exc:
            return self._error(action.tool, exc.kind, str(exc))
        except FinalAnswerSignal:
            raise
        except Exception as exc:
            logger.exception("[%s] Tool '%s' raised unexpectedly.", self.name, action.tool)
            return self._error(
                action.tool,
                ObservationKind.TOOL_ERROR,
                f"Error executing tool '{action.tool}': {type(exc).__name__}: {exc}",
            )
        return Observation(tool=action.tool, content=output)

    @staticmethod
    def _error(tool: str, kind: ObservationKind, message: str) -> Observation:
        return Observation(tool=tool, kind=kind, content=f"{truncate_observation(message)}\n{RETRY_HINT}")

    async def _best_effort_answer(self, state: RunState) -> str | None:
        prompt = Message(role=Role.USER, content=STEP_LIMIT_PROMPT.format(task=state.task))
        try:
            response = await self.client.complete([*state.transcript, prompt], [])
        except ModelError as exc:
            logger.warning("[%s] Best-effort answer failed (%s: %s).", self.name, type(exc).__name__, exc)
            return None

        # An action here is ignored; only its commentary can serve as an answer.
        text = response.text.strip()
        state.append(prompt)
        state.append(Message(role=Role.ASSISTANT, content=text))
        return text or None
