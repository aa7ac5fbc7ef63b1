"""
Task Lifecycle Controller - the only code that changes a task's status.

draft → in_progress → awaiting → completed, awaiting → in_progress on retry.

Generation (finalize, generate, retry) holds a per-task generation lock taken
atomically on the task document. The pipeline's result write is fenced on the
lock token and on the status it started from, so a second concurrent trigger is
rejected instead of interleaving two batches on one task. complete() is refused
while the lock is live, which keeps completed terminal.
"""
import os
import uuid
import logging
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument

from database import database
from models import AdditionalFile, AuditAction, SignedDocument, Task
from services.client_update_queue import enqueue_client_update, process_client_update
from services.completion_validator import check_completion, validate_completion
from services.errors import GenerationInProgress, InvalidTransition, NotFoundError, ValidationError
from services.field_resolution import aggregate_custom_fields, normalize_field_values, validate_field_values
from services.generation_pipeline import GenerationResult, document_generation_pipeline
from services.storage_adapter import (
    TASK_STORAGES,
    additional_file_path,
    additional_files_storage,
    reclaim_task_storage,
    signed_document_path,
    signed_documents_storage,
    task_documents_storage,
    task_prefix,
)
from services.task_events import create_task_event
from services.task_workflow import (
    GENERATABLE_STATES,
    TaskPriority,
    TaskStatus,
    TransitionTrigger,
    get_allowed_transitions,
    get_task_progress,
    get_workflow_status,
    is_valid_transition,
    requires_retry,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

GENERATION_LOCK_SECONDS = int(os.getenv("GENERATION_LOCK_SECONDS", "600"))

CLIENT_UPDATE_WARNING = "Client data update failed but task was completed successfully"

MAX_SIGNED_FILE_BYTES = 10 * 1024 * 1024
MAX_ADDITIONAL_FILE_BYTES = 25 * 1024 * 1024

SIGNED_ALLOWED_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/jpeg",
    "image/png",
}
ADDITIONAL_ALLOWED_TYPES = SIGNED_ALLOWED_TYPES | {
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
}

DRAFT_UPDATABLE_FIELDS = {"custom_field_values", "notes", "priority", "assigned_to"}

UPLOADED_FILE_TYPES = {
    "signed": ("signed_documents", signed_documents_storage),
    "additional": ("additional_files", additional_files_storage),
}


def _worker_id() -> str:
    return os.environ.get("GENERATION_WORKER_ID", f"{os.getpid()}-{uuid.uuid4().hex[:8]}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _unlocked_filter(now: datetime) -> Dict[str, Any]:
    return {"$or": [
        {"generation_lock": None},
        {"generation_lock": {"$exists": False}},
        {"generation_lock.locked_until": {"$lt": now}},
    ]}


def _generation_running(task: Dict[str, Any]) -> bool:
    """True while the task holds an unexpired generation lock."""
    locked_until = (task.get("generation_lock") or {}).get("locked_until")
    if not isinstance(locked_until, datetime):
        return False
    if locked_until.tzinfo is None:
        locked_until = locked_until.replace(tzinfo=timezone.utc)
    return locked_until > datetime.now(timezone.utc)


def _extension(file_name: str, default: str = "bin") -> str:
    if "." in (file_name or ""):
        return file_name.rsplit(".", 1)[1].lower() or default
    return default


def _validate_upload(file_name: str, content: bytes, content_type: str, allowed: set, max_bytes: int) -> None:
    errors = []
    if not content:
        errors.append(f"File {file_name} is empty")
    elif len(content) > max_bytes:
        errors.append(f"File {file_name} exceeds maximum size of {max_bytes // (1024 * 1024)}MB")
    if content_type not in allowed:
        errors.append(f"File type {content_type} is not allowed")
    if errors:
        raise ValidationError("; ".join(errors))


class TaskLifecycleController:
    def __init__(self, pipeline=None):
        self.pipeline = pipeline or document_generation_pipeline

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        db = database.get_db()
        task = await db.tasks.find_one({"task_id": task_id}, {"_id": 0})
        if not task:
            raise NotFoundError(f"Task not found: {task_id}", {"task_id": task_id})
        return task

    async def _load_templates(self, template_ids: List[str]) -> List[Dict[str, Any]]:
        db = database.get_db()
        cursor = db.document_templates.find({"template_id": {"$in": template_ids}}, {"_id": 0})
        return await cursor.to_list(None)

    async def get_workflow(self, task_id: str) -> Dict[str, Any]:
        task = await self.get_task(task_id)
        return {
            "task_id": task_id,
            "workflow": get_workflow_status(task),
            "progress": get_task_progress(task),
            "completion": check_completion(task),
        }

    async def get_completion_check(self, task_id: str) -> Dict[str, Any]:
        return check_completion(await self.get_task(task_id))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        task: Dict[str, Any],
        new_status: TaskStatus,
        trigger: TransitionTrigger,
        extra_fields: Optional[Dict[str, Any]] = None,
        extra_filter: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Move a task to new_status. The write is conditional on the status it was
        read with, so a concurrent change surfaces as InvalidTransition.
        """
        db = database.get_db()
        current = TaskStatus(task["status"])

        if not is_valid_transition(current, new_status):
            raise InvalidTransition(current.value, new_status.value, [s.value for s in get_allowed_transitions(current)])
        if requires_retry(current, new_status) and trigger != TransitionTrigger.RETRY:
            raise InvalidTransition(current.value, new_status.value, [TaskStatus.COMPLETED.value])

        update = {"status": new_status.value, "updated_at": _now()}
        update.update(extra_fields or {})
        query = {"task_id": task["task_id"], "status": current.value}
        query.update(extra_filter or {})

        updated = await db.tasks.find_one_and_update(
            query,
            {"$set": update},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            latest = await self.get_task(task["task_id"])
            if latest["status"] == current.value and _generation_running(latest):
                raise GenerationInProgress(
                    f"Document generation running for task {task['task_id']}", {"task_id": task["task_id"]}
                )
            raise InvalidTransition(
                latest["status"],
                new_status.value,
                [s.value for s in get_allowed_transitions(TaskStatus(latest["status"]))],
            )

        await create_task_event(task["task_id"], current.value, new_status.value, trigger.value, reason=reason)
        return updated

    # ------------------------------------------------------------------
    # Generation lock
    # ------------------------------------------------------------------

    async def _acquire_generation_lock(self, task_id: str) -> Tuple[str, Dict[str, Any]]:
        """Atomically take the task's generation lock. Returns (token, locked task)."""
        db = database.get_db()
        now = datetime.now(timezone.utc)
        token = str(uuid.uuid4())
        locked = await db.tasks.find_one_and_update(
            {"task_id": task_id, **_unlocked_filter(now)},
            {"$set": {"generation_lock": {
                "token": token,
                "locked_until": now + timedelta(seconds=GENERATION_LOCK_SECONDS),
                "owner": _worker_id(),
            }}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if locked is None:
            await self.get_task(task_id)
            raise GenerationInProgress(f"Document generation already running for task {task_id}", {"task_id": task_id})
        return token, locked

    async def _release_generation_lock(self, task_id: str, token: str) -> None:
        db = database.get_db()
        await db.tasks.update_one(
            {"task_id": task_id, "generation_lock.token": token},
            {"$set": {"generation_lock": None}},
        )

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    async def create_draft(
        self,
        client_id: str,
        service_id: str,
        initial_fields: Optional[Dict[str, Any]] = None,
        as_draft: bool = True,
        notes: Optional[str] = None,
        priority: str = TaskPriority.NORMAL.value,
        assigned_to: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a task for a (client, service) pair.

        The service's template list and the client record are snapshotted onto
        the task; later edits to the service do not change an existing task.
        """
        if not client_id or not service_id:
            raise ValidationError("Client ID and service ID are required")

        db = database.get_db()
        client = await db.clients.find_one({"client_id": client_id}, {"_id": 0})
        if not client:
            raise ValidationError(f"Client not found: {client_id}", details={"client_id": client_id})
        service = await db.services.find_one({"service_id": service_id}, {"_id": 0})
        if not service:
            raise ValidationError(f"Service not found: {service_id}", details={"service_id": service_id})
        if not service.get("is_active", True):
            raise ValidationError(f"Service is not active: {service.get('name', service_id)}")

        template_ids = list(dict.fromkeys(service.get("template_ids") or []))
        if not template_ids:
            raise ValidationError(f"Service has no templates: {service.get('name', service_id)}")

        try:
            priority_value = TaskPriority(priority or TaskPriority.NORMAL.value)
        except ValueError:
            raise ValidationError(f"Invalid priority: {priority}")

        templates = await self._load_templates(template_ids)
        field_values = normalize_field_values(initial_fields, aggregate_custom_fields(templates))

        snapshot = {k: v for k, v in client.items() if k != "task_completions"}
        client_name = client.get("full_name") or f"{client.get('first_name') or ''} {client.get('last_name') or ''}".strip()
        status = TaskStatus.DRAFT if as_draft else TaskStatus.IN_PROGRESS

        task = Task(
            status=status,
            is_draft=as_draft,
            client_id=client_id,
            service_id=service_id,
            client_name=client_name,
            service_name=service.get("name", ""),
            template_ids=template_ids,
            client_data_snapshot=snapshot,
            custom_field_values=field_values,
            notes=notes,
            priority=priority_value,
            assigned_to=assigned_to,
            created_by=created_by,
        ).model_dump()

        await db.tasks.insert_one(task)
        task.pop("_id", None)

        await create_task_event(task["task_id"], None, status.value, TransitionTrigger.CREATE.value)
        await create_audit_log(
            action=AuditAction.TASK_CREATED,
            actor_id=created_by,
            client_id=client_id,
            resource_type="task",
            resource_id=task["task_id"],
            metadata={"service_id": service_id, "template_count": len(template_ids), "is_draft": as_draft},
        )
        logger.info(f"Task created: {task['task_id']} ({status.value}) for client {client_id}, {len(template_ids)} template(s)")
        return task

    async def update_draft(self, task_id: str, updates: Dict[str, Any], updated_by: Optional[str] = None) -> Dict[str, Any]:
        task = await self.get_task(task_id)
        if task.get("status") != TaskStatus.DRAFT.value or not task.get("is_draft"):
            raise ValidationError("Only draft tasks can be updated", details={"status": task.get("status")})

        unknown = set(updates) - DRAFT_UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated on a draft: {sorted(unknown)}")

        changes: Dict[str, Any] = {}
        if "custom_field_values" in updates:
            templates = await self._load_templates(task["template_ids"])
            incoming = normalize_field_values(updates["custom_field_values"], aggregate_custom_fields(templates))
            changes["custom_field_values"] = {**(task.get("custom_field_values") or {}), **incoming}
        if "priority" in updates:
            try:
                changes["priority"] = TaskPriority(updates["priority"]).value
            except ValueError:
                raise ValidationError(f"Invalid priority: {updates['priority']}")
        for key in ("notes", "assigned_to"):
            if key in updates:
                changes[key] = updates[key]

        if not changes:
            return task
        changes["updated_at"] = _now()

        db = database.get_db()
        updated = await db.tasks.find_one_and_update(
            {"task_id": task_id, "status": TaskStatus.DRAFT.value},
            {"$set": changes},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError("Only draft tasks can be updated")

        await create_audit_log(
            action=AuditAction.TASK_DRAFT_UPDATED,
            actor_id=updated_by,
            client_id=task["client_id"],
            resource_type="task",
            resource_id=task_id,
            before_state={k: task.get(k) for k in changes if k != "updated_at"},
            after_state={k: updated.get(k) for k in changes if k != "updated_at"},
        )
        return updated

    async def finalize(self, task_id: str) -> GenerationResult:
        """Validate every custom field, leave draft, then generate."""
        task = await self.get_task(task_id)
        current = TaskStatus(task["status"])
        if current != TaskStatus.DRAFT:
            raise InvalidTransition(current.value, TaskStatus.IN_PROGRESS.value,
                                    [s.value for s in get_allowed_transitions(current)])

        templates = await self._load_templates(task["template_ids"])
        issues = validate_field_values(aggregate_custom_fields(templates), task.get("custom_field_values"))
        if issues:
            raise ValidationError(
                f"{len(issues)} field value(s) are invalid",
                issues=issues,
                details={"task_id": task_id},
            )

        await self._transition(task, TaskStatus.IN_PROGRESS, TransitionTrigger.FINALIZE, extra_fields={"is_draft": False})
        return await self.generate(task_id)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(self, task_id: str) -> GenerationResult:
        task = await self.get_task(task_id)
        current = TaskStatus(task["status"])
        if current not in GENERATABLE_STATES:
            raise InvalidTransition(current.value, TaskStatus.AWAITING.value,
                                    [s.value for s in get_allowed_transitions(current)])

        token, locked = await self._acquire_generation_lock(task_id)
        try:
            if locked.get("status") not in {s.value for s in GENERATABLE_STATES}:
                raise InvalidTransition(locked["status"], TaskStatus.AWAITING.value, [])
            return await self.pipeline.generate(locked, token)
        finally:
            await self._release_generation_lock(task_id, token)

    async def retry(self, task_id: str) -> GenerationResult:
        """
        Discard every generated document and the generation error, move back
        to in_progress and render all templates again.
        """
        task = await self.get_task(task_id)
        current = TaskStatus(task["status"])
        if current not in GENERATABLE_STATES:
            raise InvalidTransition(current.value, TaskStatus.IN_PROGRESS.value,
                                    [s.value for s in get_allowed_transitions(current)])

        token, locked = await self._acquire_generation_lock(task_id)
        try:
            reset = {
                "generated_documents": [],
                "generation_error": None,
                "generation_completed_at": None,
            }
            if locked["status"] == TaskStatus.AWAITING.value:
                reset_task = await self._transition(
                    locked,
                    TaskStatus.IN_PROGRESS,
                    TransitionTrigger.RETRY,
                    extra_fields=reset,
                    extra_filter={"generation_lock.token": token},
                    reason="retry",
                )
            elif locked["status"] == TaskStatus.IN_PROGRESS.value:
                db = database.get_db()
                reset_task = await db.tasks.find_one_and_update(
                    {"task_id": task_id, "generation_lock.token": token},
                    {"$set": {**reset, "updated_at": _now()}},
                    projection={"_id": 0},
                    return_document=ReturnDocument.AFTER,
                )
                if reset_task is None:
                    raise GenerationInProgress("Generation lock was lost during retry", {"task_id": task_id})
            else:
                raise InvalidTransition(locked["status"], TaskStatus.IN_PROGRESS.value, [])

            logger.info(f"Task {task_id}: generation reset for retry")
            return await self.pipeline.generate(reset_task, token)
        finally:
            await self._release_generation_lock(task_id, token)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def complete(
        self,
        task_id: str,
        completion_data: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        completed_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Complete the task, then run the client follow-up.

        The follow-up is queued; if it fails here it is retried by the worker and
        reported as a warning. It never reverts the completion.
        """
        task = await self.get_task(task_id)
        if _generation_running(task):
            raise GenerationInProgress(f"Cannot complete task {task_id} while generation is running", {"task_id": task_id})
        validate_completion(task)

        completed_at = _now()
        extra = {"completed_at": completed_at, "is_draft": False}
        if completion_data is not None:
            extra["completion_data"] = completion_data
        if notes is not None:
            extra["notes"] = notes
        completed = await self._transition(
            task,
            TaskStatus.COMPLETED,
            TransitionTrigger.COMPLETION,
            extra_fields=extra,
            extra_filter=_unlocked_filter(datetime.now(timezone.utc)),
        )

        await create_audit_log(
            action=AuditAction.TASK_COMPLETED,
            actor_id=completed_by,
            client_id=task["client_id"],
            resource_type="task",
            resource_id=task_id,
            metadata={"signed_documents": len(task.get("signed_documents") or [])},
        )

        warnings: List[str] = []
        client_updated = False
        try:
            job = await enqueue_client_update(completed)
            client_updated = await process_client_update(job)
        except Exception as e:
            logger.error(f"Client follow-up for task {task_id} could not run inline: {e}")
        if not client_updated:
            warnings.append(CLIENT_UPDATE_WARNING)

        logger.info(f"Task completed: {task_id} (client_updated={client_updated})")
        return {
            "success": True,
            "task": completed,
            "client_updated": client_updated,
            "warnings": warnings,
        }

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def attach_signed_document(
        self,
        task_id: str,
        template_id: str,
        file_name: str,
        content: bytes,
        content_type: str,
        uploaded_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store the signed copy for one template; a re-upload replaces the previous one."""
        task = await self.get_task(task_id)
        if task.get("status") != TaskStatus.AWAITING.value:
            raise ValidationError(
                f"Signed documents can only be uploaded while the task is awaiting (current status: {task.get('status')})"
            )
        if template_id not in (task.get("template_ids") or []):
            raise ValidationError(f"Template {template_id} is not part of task {task_id}")
        _validate_upload(file_name, content, content_type, SIGNED_ALLOWED_TYPES, MAX_SIGNED_FILE_BYTES)

        path = signed_document_path(task["client_id"], task_id, template_id, _extension(file_name, "pdf"))
        await signed_documents_storage.upsert_file(
            path, content, content_type,
            metadata={"task_id": task_id, "template_id": template_id, "file_name": file_name},
        )
        entry = SignedDocument(
            template_id=template_id,
            storage_path=path,
            file_name=file_name,
            content_type=content_type,
            size_bytes=len(content),
            uploaded_by=uploaded_by,
        ).model_dump()
        signed = [d for d in task.get("signed_documents") or [] if d.get("template_id") != template_id]
        signed.append(entry)

        db = database.get_db()
        updated = await db.tasks.find_one_and_update(
            {"task_id": task_id, "status": TaskStatus.AWAITING.value},
            {"$set": {"signed_documents": signed, "updated_at": _now()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError("Task left awaiting status during upload")

        # A re-upload with another extension lands on a new path
        for previous in task.get("signed_documents") or []:
            if previous.get("template_id") == template_id and previous.get("storage_path") not in (None, path):
                await signed_documents_storage.delete_file(previous["storage_path"])

        await create_audit_log(
            action=AuditAction.SIGNED_DOCUMENT_UPLOADED,
            actor_id=uploaded_by,
            client_id=task["client_id"],
            resource_type="task",
            resource_id=task_id,
            metadata={"template_id": template_id, "file_name": file_name},
        )
        return updated

    async def attach_additional_file(
        self,
        task_id: str,
        file_name: str,
        content: bytes,
        content_type: str,
        description: Optional[str] = None,
        uploaded_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        task = await self.get_task(task_id)
        if task.get("status") == TaskStatus.DRAFT.value:
            raise ValidationError("Files cannot be attached to a draft task")
        _validate_upload(file_name, content, content_type, ADDITIONAL_ALLOWED_TYPES, MAX_ADDITIONAL_FILE_BYTES)

        entry = AdditionalFile(
            storage_path="",
            file_name=file_name,
            content_type=content_type,
            size_bytes=len(content),
            description=description,
            uploaded_by=uploaded_by,
        )
        entry.storage_path = additional_file_path(task["client_id"], task_id, entry.file_id, file_name)
        await additional_files_storage.upsert_file(
            entry.storage_path, content, content_type,
            metadata={"task_id": task_id, "file_id": entry.file_id, "file_name": file_name},
        )

        db = database.get_db()
        updated = await db.tasks.find_one_and_update(
            {"task_id": task_id},
            {"$push": {"additional_files": entry.model_dump()}, "$set": {"updated_at": _now()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        await create_audit_log(
            action=AuditAction.ADDITIONAL_FILE_UPLOADED,
            actor_id=uploaded_by,
            client_id=task["client_id"],
            resource_type="task",
            resource_id=task_id,
            metadata={"file_id": entry.file_id, "file_name": file_name},
        )
        return updated

    async def remove_uploaded_file(
        self,
        task_id: str,
        storage_path: str,
        file_type: str = "signed",
        removed_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Drop a signed copy or additional file from the task and from storage."""
        if file_type not in UPLOADED_FILE_TYPES:
            raise ValidationError(f"Unknown file type: {file_type}", {"allowed": sorted(UPLOADED_FILE_TYPES)})
        field, storage = UPLOADED_FILE_TYPES[file_type]

        task = await self.get_task(task_id)
        if task.get("status") == TaskStatus.COMPLETED.value:
            raise ValidationError("Files cannot be removed from a completed task")
        if not any(f.get("storage_path") == storage_path for f in task.get(field) or []):
            raise NotFoundError(f"No {file_type} file at {storage_path}", {"task_id": task_id})

        db = database.get_db()
        updated = await db.tasks.find_one_and_update(
            {"task_id": task_id, "status": {"$ne": TaskStatus.COMPLETED.value}},
            {"$pull": {field: {"storage_path": storage_path}}, "$set": {"updated_at": _now()}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ValidationError("Task was completed before the file could be removed")

        removed = await storage.delete_file(storage_path)
        await create_audit_log(
            action=AuditAction.UPLOADED_FILE_REMOVED,
            actor_id=removed_by,
            client_id=task["client_id"],
            resource_type="task",
            resource_id=task_id,
            metadata={"file_type": file_type, "storage_path": storage_path, "revisions_removed": removed},
        )
        logger.info(f"Task {task_id}: removed {file_type} file {storage_path}")
        return updated

    async def download_generated_document(self, task_id: str, template_id: str) -> Tuple[bytes, Dict[str, Any]]:
        task = await self.get_task(task_id)
        entry = next(
            (d for d in task.get("generated_documents") or [] if d.get("template_id") == template_id and d.get("storage_path")),
            None,
        )
        if entry is None:
            raise NotFoundError(f"No generated document for template {template_id}", {"task_id": task_id})
        content, meta = await task_documents_storage.download_file(entry["storage_path"])
        return content, {**entry, "content_type": meta.content_type}

    async def list_task_files(self, task_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """Everything actually stored under the task's prefix, per bucket."""
        task = await self.get_task(task_id)
        prefix = task_prefix(task["client_id"], task_id)
        return {
            storage.bucket_name: [meta.to_dict() for meta in await storage.list_files(prefix=prefix, limit=500)]
            for storage in TASK_STORAGES
        }

    def get_task_storage_paths(self, task: Dict[str, Any]) -> Dict[str, List[str]]:
        return {
            "generated": [d["storage_path"] for d in task.get("generated_documents") or [] if d.get("storage_path")],
            "signed": [d["storage_path"] for d in task.get("signed_documents") or [] if d.get("storage_path")],
            "additional": [d["storage_path"] for d in task.get("additional_files") or [] if d.get("storage_path")],
        }

    async def delete_task(self, task_id: str, deleted_by: Optional[str] = None) -> Dict[str, Any]:
        """Reclaim every stored file under the task's prefix, then drop the task."""
        task = await self.get_task(task_id)
        if _generation_running(task):
            raise GenerationInProgress(f"Cannot delete task {task_id} while generation is running")

        reclaimed = await reclaim_task_storage(task["client_id"], task_id)

        db = database.get_db()
        await db.tasks.delete_one({"task_id": task_id})
        await db.client_update_queue.delete_many({"task_id": task_id})

        await create_audit_log(
            action=AuditAction.TASK_DELETED,
            actor_id=deleted_by,
            client_id=task["client_id"],
            resource_type="task",
            resource_id=task_id,
            metadata={"reclaimed": reclaimed, "prefix": task_prefix(task["client_id"], task_id)},
        )
        logger.info(f"Task deleted: {task_id}, reclaimed {sum(reclaimed.values())} file(s)")
        return {"success": True, "task_id": task_id, "reclaimed": reclaimed}


task_controller = TaskLifecycleController()
