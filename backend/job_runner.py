"""
Shared job runner for scheduled background jobs.
Used by the server scheduler; each run_* returns a dict with "message" and "count".
"""
import logging

from utils.timers import utc_now

logger = logging.getLogger(__name__)


async def run_scheduled_change_sweep(registry=None):
    """Revalidate live sessions whose scheduled plan change has come due."""
    try:
        from services.scheduled_changes import sweep_due_changes
        from services.session_registry import session_registry
        registry = registry or session_registry
        count = await sweep_due_changes(registry, utc_now())
        await registry.reap()
        logger.info(f"Scheduled change sweep completed: {count} sessions revalidated")
        return {"message": f"Sessions revalidated: {count}", "count": count}
    except Exception as e:
        logger.error(f"Scheduled change sweep failed: {e}")
        raise
