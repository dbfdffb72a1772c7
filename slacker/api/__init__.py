"""API routes for Slacker."""

from fastapi import APIRouter

from .auth import router as auth_router
from .github import router as github_router
from .items import router as items_router
from .slack import router as slack_router

# Main API router
api_router = APIRouter()

# Inbound webhooks
api_router.include_router(slack_router)
api_router.include_router(github_router)

# Account linking
api_router.include_router(auth_router)

# Lifecycle actions behind the interactive surface
api_router.include_router(items_router)

__all__ = ["api_router"]
