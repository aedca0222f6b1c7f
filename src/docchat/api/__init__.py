"""HTTP routers exposing the chat orchestrator."""
from __future__ import annotations

from .turns import router as turns_router

__all__ = ["turns_router"]
