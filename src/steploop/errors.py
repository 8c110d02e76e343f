# errors.py
# Exception taxonomy for the step loop.
#
# Tool errors never end a run: the harness turns them into Observations.
# Model errors end a run unless the retry policy absorbs them.

from steploop.models import ObservationKind


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class EngineError(Exception):
    """Root of every error raised by the engine."""


class ConfigurationError(EngineError):
    """Raised before a run starts when an agent configuration is invalid."""


# ---------------------------------------------------------------------------
# Tool errors (recoverable, become Observations)
# ---------------------------------------------------------------------------


class ToolError(EngineError):
    kind: ObservationKind = ObservationKind.TOOL_ERROR


class InvalidArguments(ToolError):
    """Arguments failed the tool's declared schema."""

    kind = ObservationKind.INVALID_ARGUMENTS


class ToolTimeout(ToolError):
    kind = ObservationKind.TOOL_TIMEOUT


class ToolUnavailable(ToolError):
    """The tool's backend (usually a remote tool server) cannot be reached."""

    kind = ObservationKind.TOOL_UNAVAILABLE


class ToolExecutionError(ToolError):
    kind = ObservationKind.TOOL_ERROR


class FinalAnswerSignal(Exception):
    """Raised by a tool when executed code called final_answer()."""

    def __init__(self, answer: str) -> None:
        super().__init__(answer)
        self.answer = answer


# ---------------------------------------------------------------------------
# Model errors
# ---------------------------------------------------------------------------


class ModelError(EngineError):
    """Failure while querying a model backend."""


class ModelTransientFailure(ModelError):
    """Network-level failure. Retried with backoff."""


class ModelAuthFailure(ModelError):
    """Credentials rejected. Never retried."""


class ModelMalformedResponse(ModelError):
    """Backend answered with something that cannot be interpreted. Never retried."""
