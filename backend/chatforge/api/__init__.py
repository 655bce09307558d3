"""API router exports."""
from .chat import router as chat_router
from .dashboard import router as dashboard_router
from .internal import router as internal_router

__all__ = [
    "chat_router",
    "dashboard_router",
    "internal_router",
]
