"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import finances, work_orders, notifications

router = APIRouter()

# Finance administration
router.include_router(finances.router)

# Work order verification (triggers settlement)
router.include_router(work_orders.router)

# In-app notifications
router.include_router(notifications.router)
