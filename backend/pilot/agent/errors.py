"""Exception taxonomy for agent runs.

Only Cancelled, PlanningFailed, ActionPhaseFailed and a fatal
OperatorActionFailed end a run. Everything else is turned into an event the
model can react to on a later turn.
"""

from __future__ import annotations


class PilotError(Exception):
    """Base class for all orchestration errors."""


class Cancelled(PilotError):
    """Cooperative cancellation. Never reported to the user as a failure."""


class PlanningFailed(PilotError):
    pass


class ActionPhaseFailed(PilotError):
    pass


class AwarenessFailed(PilotError):
    pass


class ToolExecutionFailed(PilotError):
    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name}: {message}")


class OperatorActionFailed(PilotError):
    """An operator backend could not apply an action.

    fatal=True means the device state is unknown (remote retries exhausted)
    and the run must not continue past it.
    """

    def __init__(self, message: str, fatal: bool = False):
        self.fatal = fatal
        super().__init__(message)


class SessionNotFound(PilotError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionBusy(PilotError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has an active run")
