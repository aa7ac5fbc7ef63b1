"""
Client follow-up queue (outbox).

After a task completes, the client record gets a completion summary appended to
task_completions and last_service_date set. The update is enqueued as a job so
a failure never touches the completed task: complete() processes the job once
inline and the scheduled worker in job_runner retries with backoff until DONE
or DEAD.
"""
import os
import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Optional

from database import database

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_RUNNING = "RUNNING"
STATUS_DONE = "DONE"
STATUS_FAILED = "FAILED"
STATUS_DEAD = "DEAD"

CLIENT_UPDATE_MAX_ATTEMPTS = int(os.getenv("CLIENT_UPDATE_MAX_ATTEMPTS", "5"))
CLIENT_UPDATE_BACKOFF = [30, 120, 600, 1800]


class ClientUpdateError(Exception):
    pass


def build_completion_entry(task: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "task_id": task["task_id"],
        "service_name": task.get("service_name"),
        "completed_at": task.get("completed_at"),
        "template_ids": task.get("template_ids") or [],
        "documents_generated": len(task.get("generated_documents") or []),
        "signed_documents": len(task.get("signed_documents") or []),
    }


async def enqueue_client_update(task: Dict[str, Any]) -> Dict[str, Any]:
    """
    Enqueue the follow-up for a completed task. Idempotent by task_id:
    a second call returns the existing job.
    """
    db = database.get_db()
    now = datetime.now(timezone.utc).isoformat()
    job = {
        "job_id": str(uuid.uuid4()),
        "task_id": task["task_id"],
        "client_id": task["client_id"],
        "payload": build_completion_entry(task),
        "status": STATUS_PENDING,
        "attempts": 0,
        "next_run_at": now,
        "last_error": None,
        "created_at": now,
        "updated_at": now,
    }
    try:
        await db.client_update_queue.insert_one(job)
        job.pop("_id", None)
        logger.info(f"Enqueued client update task_id={task['task_id']} client_id={task['client_id']}")
        return job
    except Exception as e:
        if "duplicate key" in str(e).lower() or "E11000" in str(e):
            existing = await db.client_update_queue.find_one({"task_id": task["task_id"]}, {"_id": 0})
            if existing:
                return existing
        raise


async def apply_client_update(client_id: str, entry: Dict[str, Any]) -> None:
    db = database.get_db()
    now = datetime.now(timezone.utc).isoformat()
    result = await db.clients.update_one(
        {"client_id": client_id},
        {
            "$push": {"task_completions": entry},
            "$set": {"last_service_date": entry.get("completed_at") or now, "updated_at": now},
        },
    )
    if result.matched_count == 0:
        raise ClientUpdateError(f"Client not found: {client_id}")


async def process_client_update(job: Dict[str, Any]) -> bool:
    """
    Claim and run one job. Returns True when the client was updated.
    Failures are recorded on the job, never raised.
    """
    db = database.get_db()
    now = datetime.now(timezone.utc)
    claimed = await db.client_update_queue.update_one(
        {"job_id": job["job_id"], "status": {"$in": [STATUS_PENDING, STATUS_FAILED]}},
        {"$set": {"status": STATUS_RUNNING, "updated_at": now.isoformat()}},
    )
    if claimed.modified_count == 0:
        return False

    try:
        await apply_client_update(job["client_id"], job["payload"])
    except Exception as e:
        attempts = job.get("attempts", 0) + 1
        if attempts >= CLIENT_UPDATE_MAX_ATTEMPTS:
            new_status = STATUS_DEAD
            next_run_at = now.isoformat()
        else:
            new_status = STATUS_FAILED
            delay = CLIENT_UPDATE_BACKOFF[min(attempts - 1, len(CLIENT_UPDATE_BACKOFF) - 1)]
            next_run_at = (now + timedelta(seconds=delay)).isoformat()
        await db.client_update_queue.update_one(
            {"job_id": job["job_id"]},
            {"$set": {
                "status": new_status,
                "attempts": attempts,
                "next_run_at": next_run_at,
                "last_error": str(e),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }},
        )
        logger.warning(f"Client update failed task_id={job['task_id']} attempts={attempts} status={new_status} err={e}")
        return False

    await db.client_update_queue.update_one(
        {"job_id": job["job_id"]},
        {"$set": {"status": STATUS_DONE, "last_error": None, "updated_at": datetime.now(timezone.utc).isoformat()}},
    )
    logger.info(f"Client {job['client_id']} updated for task {job['task_id']}")
    return True


async def get_client_update_job(task_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.client_update_queue.find_one({"task_id": task_id}, {"_id": 0})
