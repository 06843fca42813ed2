"""AlumNode messaging, connections and admin gating core."""

from .admin_guard import AdminAuthGuard, GuardDecision
from .connections import ConnectionStateMachine, ConnectionStatus
from .conversations import ConversationResolver
from .hub import ChangeEvent, ChangeHub, Subscription
from .messages import MessageStore
from .read_state import ReadStateReconciler
from .store import Filter, InMemoryStore, Store
from .sync import MessageTimeline, RealtimeSyncBridge

__all__ = [
    "AdminAuthGuard",
    "GuardDecision",
    "ConnectionStateMachine",
    "ConnectionStatus",
    "ConversationResolver",
    "ChangeEvent",
    "ChangeHub",
    "Subscription",
    "MessageStore",
    "ReadStateReconciler",
    "Filter",
    "InMemoryStore",
    "Store",
    "MessageTimeline",
    "RealtimeSyncBridge",
]
