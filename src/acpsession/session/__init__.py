"""ACP session core: supervision, correlation, routing and lifecycle."""

from .manager import OperationResult, SessionInfo, SessionManager, SessionState
from .router import NotificationRouter, SessionEvent, Subscription
from .supervisor import ProcessSupervisor, ProviderRegistry, SpawnSpec, default_provider_registry

__all__ = [
    "NotificationRouter",
    "OperationResult",
    "ProcessSupervisor",
    "ProviderRegistry",
    "SessionEvent",
    "SessionInfo",
    "SessionManager",
    "SessionState",
    "SpawnSpec",
    "Subscription",
    "default_provider_registry",
]
