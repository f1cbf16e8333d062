"""Opportunity Loop - API Routers"""
from .opportunities import router as opportunities_router
from .autonomy import router as autonomy_router
from .scheduler import router as scheduler_router

__all__ = [
    "opportunities_router",
    "autonomy_router",
    "scheduler_router",
]
