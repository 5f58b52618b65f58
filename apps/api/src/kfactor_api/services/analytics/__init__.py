from .dispatcher import AnalyticsDispatcher, QueuedEvent

__all__ = ["AnalyticsDispatcher", "QueuedEvent"]
