# planner.py
# Periodic re-planning: one model call, distinct system prompt, no tools.

import logging

from steploop.errors import ModelMalformedResponse
from steploop.llm import ModelClient, to_text_messages
from steploop.models import ActionRequest, FinalText, Message, Role, ToolDescriptor
from steploop.tools import describe_tool

logger = logging.getLogger(__name__)

PLANNING_PROMPT = """\
You are a world expert at making efficient plans to solve any task using a \
set of carefully crafted tools.

You will be given a task together with everything that has been tried so far. \
First list the facts you have established and the facts still missing. Then \
write a short, numbered, step-by-step plan to finish the task from where it \
stands, using only the tools below. Do not solve the task and do not call any \
tool: answer with the facts and the plan only, ending the plan with a final \
answer step.

Available tools:
{tool_descriptions}\
"""


class Planner:
    """
    Derives a fresh plan from the transcript so far.

    The transcript is flattened into a single user message so that the plan
    call never depends on the provider's tool-call bookkeeping.
    """

    def __init__(self, client: ModelClient) -> None:
        self._client = client

    def _messages(self, transcript: list[Message], tools: list[ToolDescriptor]) -> list[Message]:
        history = []
        for entry in to_text_messages(transcript):
            if entry["role"] == "system":
                continue
            history.append(f"[{entry['role'].upper()}]:\n{entry['content']}")
        descriptions = "\n".join(f"- {describe_tool(t)}" for t in tools) or "(none)"
        return [
            Message(role=Role.SYSTEM, content=PLANNING_PROMPT.format(tool_descriptions=descriptions)),
            Message(
                role=Role.USER,
                content="Here is the history of the run so far:\n\n"
                + "\n\n".join(history)
                + "\n\nNow write the updated facts and plan.",
            ),
        ]

    async def plan(self, transcript: list[Message], tools: list[ToolDescriptor]) -> str:
        """
        Raises ModelError (or a subclass) if the planning call fails or the
        model produced no usable plan; the caller decides how to degrade.
        """
        response = await self._client.complete(self._messages(transcript, tools), [])
        if isinstance(response, FinalText) and response.text.strip():
            return response.text.strip()
        if isinstance(response, ActionRequest) and response.text.strip():
            logger.debug("Planner answered with an action; keeping its commentary as the plan.")
            return response.text.strip()
        raise ModelMalformedResponse("Planner returned an empty plan.")
