"""Rig engine — line-JSON bridges to long-lived agent processes."""
from .models import (
    THINKING_LEVEL_ORDER,
    ConversationRecord,
    DispatchNeedsModel,
    DispatchNeedsProject,
    DispatchRequest,
    DispatchResult,
    DispatchWatchTarget,
    ExitInfo,
    LiveState,
    ProjectRef,
    PromptImage,
    SpawnOptions,
)
from .errors import (
    BridgeNotAliveError,
    CommandTimeoutError,
    ConversationExitedError,
    DispatchValidationError,
    ModelSelectionError,
    ProcessExitedError,
    RigError,
    SpawnError,
    StartupError,
    TurnTimeoutError,
)
from .events import EventStream
from .fanout import EventFanout, QueueSubscriber
from .channel import LineJsonChannel
from .registry import BridgeRegistry, BridgeSession
from .dispatch import Dispatcher
from .catalog import ModelCatalog

__all__ = [
    # Models
    "THINKING_LEVEL_ORDER",
    "ConversationRecord",
    "DispatchNeedsModel",
    "DispatchNeedsProject",
    "DispatchRequest",
    "DispatchResult",
    "DispatchWatchTarget",
    "ExitInfo",
    "LiveState",
    "ProjectRef",
    "PromptImage",
    "SpawnOptions",
    # Errors
    "BridgeNotAliveError",
    "CommandTimeoutError",
    "ConversationExitedError",
    "DispatchValidationError",
    "ModelSelectionError",
    "ProcessExitedError",
    "RigError",
    "SpawnError",
    "StartupError",
    "TurnTimeoutError",
    # Bridges
    "EventStream",
    "EventFanout",
    "QueueSubscriber",
    "LineJsonChannel",
    "BridgeRegistry",
    "BridgeSession",
    "Dispatcher",
    "ModelCatalog",
]
