"""Exception hierarchy for the process bridge.

Specific exceptions for each failure mode. Malformed protocol lines are
never raised; they are dropped where they are read.
"""
from __future__ import annotations


class RigError(Exception):
    """Base exception for all bridge and orchestration errors."""


class SpawnError(RigError):
    """The agent executable could not be located or executed."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Could not start '{command}': {reason}")


class StartupError(RigError):
    """The agent process exited during its startup grace window."""
    def __init__(self, returncode: int | None, stderr: str):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Agent process exited immediately (code={returncode}). "
            f"Stderr: {stderr}"
        )


class BridgeNotAliveError(RigError):
    """A command was sent to a bridge whose process is gone."""
    def __init__(self, bridge_id: str):
        self.bridge_id = bridge_id
        super().__init__(f"Agent process for {bridge_id} is not alive")


class CommandTimeoutError(RigError, TimeoutError):
    """No correlated response arrived before the command deadline."""
    def __init__(self, command_type: str, timeout_seconds: float):
        self.command_type = command_type
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timeout waiting for response to {command_type} "
            f"after {timeout_seconds}s"
        )


class ProcessExitedError(RigError):
    """The agent process exited with requests still outstanding."""
    def __init__(
        self,
        bridge_id: str,
        returncode: int | None,
        signal: str | None = None,
    ):
        self.bridge_id = bridge_id
        self.returncode = returncode
        self.signal = signal
        super().__init__(
            f"Agent process {bridge_id} exited "
            f"(code={returncode}, signal={signal})"
        )


class TurnTimeoutError(RigError, TimeoutError):
    """A conversation turn exceeded its ceiling. The bridge survives."""
    def __init__(self, conversation_id: str, timeout_seconds: float):
        self.conversation_id = conversation_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timed out waiting for turn in {conversation_id} "
            f"to finish after {timeout_seconds}s"
        )


class ConversationExitedError(RigError):
    """The conversation's agent process exited mid-turn."""
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(
            f"Operator session {conversation_id} exited while handling message"
        )


class DispatchValidationError(RigError):
    """A request is missing required fields or has invalid values."""


class ModelSelectionError(RigError):
    """The agent rejected a model selection."""
    def __init__(self, provider: str, model_id: str, reason: str | None = None):
        self.provider = provider
        self.model_id = model_id
        self.reason = reason
        super().__init__(
            f"Could not select model {provider}/{model_id}: {reason or 'rejected by agent'}"
        )
