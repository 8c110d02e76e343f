# grammar.py
# Turns a dialect's raw completion into exactly one ModelResponse.
#
# Precedence: a structured tool call wins, then an action found in the text,
# then plain text. Output that is none of these becomes FinalText flagged as
# malformed; nothing here raises on bad model output.

import json
import logging
import re

from steploop.models import (
    Action,
    ActionRequest,
    FinalText,
    ModelResponse,
    RawCompletion,
)
from steploop.tools import FINAL_ANSWER, PYTHON_INTERPRETER

logger = logging.getLogger(__name__)

_TOOL_CALL_TAG = re.compile(r"<tool_call>(.*?)(?:</tool_call>|$)", re.DOTALL)
_ACTION_MARKER = re.compile(r"Action:\s*", re.DOTALL)
_THOUGHT = re.compile(r"Thought:\s*(.+?)(?=\n\s*(?:Action:|Code:|<tool_call>|```)|$)", re.DOTALL)
_CODE_BLOCK = re.compile(r"```(?:py|python)?[ \t]*\n(.*?)\n?```", re.DOTALL)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _strip_fences(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw)
        raw = re.sub(r"\s*```$", "", raw)
    return raw


def _outer_object(raw: str) -> str | None:
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        return None
    return raw[start:end + 1]


def extract_thought(text: str) -> str:
    match = _THOUGHT.search(text)
    if match:
        return match.group(1).strip()
    # Commentary before the action marker, if any.
    for marker in ("<tool_call>", "Action:", "```"):
        head, sep, _ = text.partition(marker)
        if sep:
            return head.strip()
    return text.strip()


def _action_payload(text: str) -> str | None:
    """Locate the JSON payload of a textual action, or None if there is no marker."""
    tag = _TOOL_CALL_TAG.search(text)
    if tag:
        return tag.group(1)
    marker = _ACTION_MARKER.search(text)
    if marker:
        return text[marker.end():]
    return None


def parse_text_action(text: str) -> Action | None:
    """
    Extract an action from free text.

    Returns None if the text carries no action marker.
    Raises ValueError if a marker is present but the payload is unusable.
    """
    payload = _action_payload(text)
    if payload is None:
        return None

    body = _outer_object(_strip_fences(payload))
    if body is None:
        raise ValueError("action marker without a JSON object")
    data = json.loads(body, strict=False)
    if not isinstance(data, dict) or not isinstance(data.get("name"), str):
        raise ValueError("action JSON must contain a string 'name'")

    arguments = data.get("arguments", data.get("args", {}))
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments, strict=False)
        except json.JSONDecodeError:
            arguments = {"input": arguments}
    if not isinstance(arguments, dict):
        raise ValueError("action 'arguments' must be a JSON object")
    return Action(tool=data["name"], arguments=arguments)


def parse_code_blobs(text: str) -> str | None:
    blocks = [block.strip() for block in _CODE_BLOCK.findall(text)]
    blocks = [block for block in blocks if block]
    return "\n\n".join(blocks) if blocks else None


# ---------------------------------------------------------------------------
# Grammars
# ---------------------------------------------------------------------------


class ToolCallGrammar:
    """JSON actions: provider tool calls, <tool_call> tags or 'Action:' blocks."""

    def interpret(self, raw: RawCompletion) -> ModelResponse:
        text = raw.text or ""
        if raw.actions:
            if len(raw.actions) > 1:
                logger.warning(
                    "Model requested %d tool calls; executing only the first (%s).",
                    len(raw.actions),
                    raw.actions[0].tool,
                )
            return self._resolve(raw.actions[0], text)

        try:
            action = parse_text_action(text)
        except (ValueError, json.JSONDecodeError) as exc:
            logger.warning("Unparseable action in model output (%s); treating as final text.", exc)
            return FinalText(text=text.strip(), malformed=True)
        if action is not None:
            return self._resolve(action, extract_thought(text))

        if text.strip():
            return FinalText(text=text.strip())
        logger.warning("Model returned neither text nor an action.")
        return FinalText(text="", malformed=True)

    def _resolve(self, action: Action, text: str) -> ModelResponse:
        if action.tool == FINAL_ANSWER.name and action.parse_error is None:
            answer = action.arguments.get("answer")
            if answer is None and len(action.arguments) == 1:
                answer = next(iter(action.arguments.values()))
            if answer is not None:
                return FinalText(text=answer if isinstance(answer, str) else json.dumps(answer))
        return ActionRequest(action=action, text=text.strip())


class CodeGrammar:
    """
    Fenced Python blocks, executed by the python interpreter tool.

    Output without a code block falls through to the JSON grammar, so a code
    agent can still call its other tools or answer in plain text.
    """

    def __init__(self) -> None:
        self._fallback = ToolCallGrammar()

    def interpret(self, raw: RawCompletion) -> ModelResponse:
        text = raw.text or ""
        code = parse_code_blobs(text)
        if code is not None:
            action = Action(tool=PYTHON_INTERPRETER.name, arguments={"code": code})
            return ActionRequest(action=action, text=extract_thought(text))
        return self._fallback.interpret(raw)
