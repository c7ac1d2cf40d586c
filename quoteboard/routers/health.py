"""
Health Check Endpoint
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from quoteboard.db.connection import ping
from quoteboard.deps import get_reminders
from quoteboard.reminders import ReminderEngine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(reminders: ReminderEngine = Depends(get_reminders)):
    """Liveness plus database reachability. Always 200 so the process stays up."""
    db_ok = await ping()
    return {
        "status": "ok" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "healthy" if db_ok else "unreachable",
        "notifier": reminders.notifier.channel_name,
        "reminders": "running" if reminders.running else "stopped",
    }
