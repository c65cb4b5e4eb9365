"""Rig operator — chat conversations mapped onto agent bridges."""
from .config import OperatorConfig, RestConfig
from .store import ConversationStore
from .conversations import (
    ActiveConversation,
    ConversationOrchestrator,
    ModelStatus,
    TurnCallbacks,
    TurnQueue,
    TurnResult,
)
from .watcher import NotificationWatcher, SessionDone

__all__ = [
    "OperatorConfig",
    "RestConfig",
    "ConversationStore",
    "ActiveConversation",
    "ConversationOrchestrator",
    "ModelStatus",
    "TurnCallbacks",
    "TurnQueue",
    "TurnResult",
    "NotificationWatcher",
    "SessionDone",
]
