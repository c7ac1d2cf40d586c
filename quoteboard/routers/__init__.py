"""API routers. Everything is mounted under /api."""

from fastapi import APIRouter

from quoteboard.routers import auth, customers, health, quotes, tasks

api_router = APIRouter(prefix="/api")
api_router.include_router(health.router)
api_router.include_router(auth.router)
api_router.include_router(quotes.router)
api_router.include_router(customers.router)
api_router.include_router(tasks.router)

__all__ = ["api_router"]
