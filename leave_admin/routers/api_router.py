from fastapi import APIRouter
from leave_admin.routers import leave, leave_manager

# Centralized API router hub
# Routers are aggregated here and main.py only imports this single hub.
api_router = APIRouter()

api_router.include_router(leave.router, tags=["Leave"])
api_router.include_router(leave_manager.router, tags=["Leave Manager"])
