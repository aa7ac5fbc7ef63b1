"""
Task event trail - one record per task status change.
"""
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from database import database

logger = logging.getLogger(__name__)


async def create_task_event(
    task_id: str,
    previous_state: Optional[str],
    new_state: str,
    triggered_by: str,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Record a status transition. Returns the event_id."""
    db = database.get_db()
    event_id = str(uuid.uuid4())
    await db.task_events.insert_one({
        "event_id": event_id,
        "task_id": task_id,
        "previous_state": previous_state,
        "new_state": new_state,
        "triggered_by": triggered_by,
        "reason": reason,
        "metadata": metadata,
        "created_at": datetime.now(timezone.utc).isoformat(),
    })
    logger.info(f"Task {task_id}: {previous_state} → {new_state} ({triggered_by})")
    return event_id


async def get_task_events(task_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    db = database.get_db()
    cursor = db.task_events.find({"task_id": task_id}, {"_id": 0}).sort("created_at", 1).limit(limit)
    return await cursor.to_list(limit)
