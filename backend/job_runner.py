"""
Shared job runner for scheduled background jobs.
Used by the server scheduler.
Each run_* returns a dict with "message" (and optionally "count").
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

CLIENT_UPDATE_BATCH_SIZE = 20


async def run_client_update_worker():
    """
    Process client_update_queue: pick due PENDING/FAILED jobs and run them.
    Claiming is atomic inside process_client_update, so overlapping runs are safe.
    """
    try:
        from database import database
        from services.client_update_queue import (
            STATUS_PENDING,
            STATUS_FAILED,
            process_client_update,
        )

        db = database.get_db()
        now_iso = datetime.now(timezone.utc).isoformat()
        cursor = db.client_update_queue.find(
            {"status": {"$in": [STATUS_PENDING, STATUS_FAILED]}, "next_run_at": {"$lte": now_iso}},
            {"_id": 0},
        ).sort("next_run_at", 1).limit(CLIENT_UPDATE_BATCH_SIZE)
        jobs = await cursor.to_list(CLIENT_UPDATE_BATCH_SIZE)

        processed = 0
        for job in jobs:
            if await process_client_update(job):
                processed += 1
        if jobs:
            logger.info(f"Client update worker: {processed}/{len(jobs)} job(s) processed")
        return {"message": f"Client update worker: {processed} processed", "count": processed}
    except Exception as e:
        logger.error(f"Client update worker failed: {e}")
        raise


async def run_stale_generation_lock_cleanup():
    """Clear generation locks whose lease expired (worker crashed mid-batch)."""
    try:
        from database import database

        db = database.get_db()
        result = await db.tasks.update_many(
            {"generation_lock.locked_until": {"$lt": datetime.now(timezone.utc)}},
            {"$set": {"generation_lock": None}},
        )
        if result.modified_count:
            logger.warning(f"Cleared {result.modified_count} expired generation lock(s)")
        return {"message": f"Expired generation locks cleared: {result.modified_count}", "count": result.modified_count}
    except Exception as e:
        logger.error(f"Generation lock cleanup failed: {e}")
        raise
