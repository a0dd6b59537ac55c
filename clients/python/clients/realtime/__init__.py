from .client import RealtimeClient, RealtimeClientError

__all__ = ["RealtimeClient", "RealtimeClientError"]
