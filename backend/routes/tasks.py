"""
Task API Routes - task lifecycle, document generation and file attachment.

Domain errors (services.errors) and StorageError are turned into HTTP responses
by the exception handlers registered in server.py.
"""
import io
import logging
from typing import Optional, Dict, Any

from fastapi import APIRouter, File, Form, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from services.client_update_queue import get_client_update_job
from services.task_events import get_task_events
from services.task_service import task_controller
from utils.audit import get_audit_logs_for_resource

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/tasks", tags=["tasks"])


# ============================================================================
# REQUEST MODELS
# ============================================================================

class CreateTaskRequest(BaseModel):
    client_id: str = Field(..., description="Client the documents are generated for")
    service_id: str = Field(..., description="Service whose templates are rendered")
    custom_field_values: Dict[str, Any] = Field(default_factory=dict, description="Initial custom field values, keyed by name or label")
    as_draft: bool = Field(True, description="Create as draft (finalize later) or directly in progress")
    notes: Optional[str] = None
    priority: str = Field("normal", description="low, normal, high or urgent")
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None


class UpdateDraftRequest(BaseModel):
    custom_field_values: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[str] = None
    updated_by: Optional[str] = None


class CompleteTaskRequest(BaseModel):
    completion_data: Optional[Dict[str, Any]] = Field(None, description="Free-form data stored on the completed task")
    notes: Optional[str] = None
    completed_by: Optional[str] = None


class RemoveFileRequest(BaseModel):
    storage_path: str = Field(..., description="Storage path of the uploaded file")
    file_type: str = Field("signed", description="signed or additional")
    removed_by: Optional[str] = None


# ============================================================================
# LIFECYCLE
# ============================================================================

@router.post("/draft")
async def create_task(request: CreateTaskRequest):
    task = await task_controller.create_draft(
        client_id=request.client_id,
        service_id=request.service_id,
        initial_fields=request.custom_field_values,
        as_draft=request.as_draft,
        notes=request.notes,
        priority=request.priority,
        assigned_to=request.assigned_to,
        created_by=request.created_by,
    )
    return {"success": True, "task": task}


@router.put("/{task_id}/draft")
async def update_draft(task_id: str, request: UpdateDraftRequest):
    updates = request.model_dump(exclude_unset=True, exclude={"updated_by"})
    task = await task_controller.update_draft(task_id, updates, updated_by=request.updated_by)
    return {"success": True, "task": task}


@router.post("/{task_id}/finalize")
async def finalize_task(task_id: str):
    """Validate the draft's field values, leave draft status and generate documents."""
    result = await task_controller.finalize(task_id)
    return result.to_dict()


@router.post("/{task_id}/generate")
async def generate_documents(task_id: str):
    result = await task_controller.generate(task_id)
    return result.to_dict()


@router.get("/{task_id}/retry")
async def get_retry_status(task_id: str):
    task = await task_controller.get_task(task_id)
    failed = [d for d in task.get("generated_documents") or [] if d.get("status") == "failed"]
    return {
        "task_id": task_id,
        "status": task.get("status"),
        "can_retry": task.get("status") in ("in_progress", "awaiting"),
        "generation_error": task.get("generation_error"),
        "failed_documents": failed,
    }


@router.post("/{task_id}/retry")
async def retry_generation(task_id: str):
    """Discard all generated documents and render every template again."""
    result = await task_controller.retry(task_id)
    return result.to_dict()


@router.get("/{task_id}/complete")
async def get_completion_status(task_id: str):
    return await task_controller.get_completion_check(task_id)


@router.post("/{task_id}/complete")
async def complete_task(task_id: str, request: Optional[CompleteTaskRequest] = None):
    request = request or CompleteTaskRequest()
    return await task_controller.complete(
        task_id,
        completion_data=request.completion_data,
        notes=request.notes,
        completed_by=request.completed_by,
    )


# ============================================================================
# FILES
# ============================================================================

@router.post("/{task_id}/signed/{template_id}")
async def upload_signed_document(
    task_id: str,
    template_id: str,
    file: UploadFile = File(...),
    uploaded_by: Optional[str] = Form(None),
):
    content = await file.read()
    task = await task_controller.attach_signed_document(
        task_id,
        template_id,
        file_name=file.filename or "signed-document",
        content=content,
        content_type=file.content_type or "application/octet-stream",
        uploaded_by=uploaded_by,
    )
    return {"success": True, "task": task}


@router.post("/{task_id}/additional-files")
async def upload_additional_file(
    task_id: str,
    file: UploadFile = File(...),
    description: Optional[str] = Form(None),
    uploaded_by: Optional[str] = Form(None),
):
    content = await file.read()
    task = await task_controller.attach_additional_file(
        task_id,
        file_name=file.filename or "file",
        content=content,
        content_type=file.content_type or "application/octet-stream",
        description=description,
        uploaded_by=uploaded_by,
    )
    return {"success": True, "task": task}


@router.get("/{task_id}/documents/{template_id}")
async def download_generated_document(task_id: str, template_id: str):
    content, entry = await task_controller.download_generated_document(task_id, template_id)
    return StreamingResponse(
        io.BytesIO(content),
        media_type=entry["content_type"],
        headers={"Content-Disposition": f'attachment; filename="{entry.get("file_name") or template_id}"'},
    )


# ============================================================================
# READS / DELETE
# ============================================================================

@router.get("/{task_id}/workflow")
async def get_workflow(task_id: str):
    workflow = await task_controller.get_workflow(task_id)
    workflow["events"] = await get_task_events(task_id)
    workflow["client_update"] = await get_client_update_job(task_id)
    return workflow


@router.get("/{task_id}/files")
async def list_task_files(task_id: str):
    """Stored objects under the task's prefix, straight from storage."""
    return {"task_id": task_id, "files": await task_controller.list_task_files(task_id)}


@router.delete("/{task_id}/files")
async def remove_uploaded_file(task_id: str, request: RemoveFileRequest):
    task = await task_controller.remove_uploaded_file(
        task_id,
        request.storage_path,
        file_type=request.file_type,
        removed_by=request.removed_by,
    )
    return {"success": True, "task": task}


@router.get("/{task_id}/audit")
async def get_task_audit_trail(task_id: str, limit: int = 50):
    await task_controller.get_task(task_id)
    logs = await get_audit_logs_for_resource("task", task_id, limit=limit)
    return {"task_id": task_id, "audit_logs": logs, "count": len(logs)}


@router.get("/{task_id}")
async def get_task(task_id: str):
    task = await task_controller.get_task(task_id)
    task.pop("generation_lock", None)
    return {"task": task, "storage_paths": task_controller.get_task_storage_paths(task)}


@router.delete("/{task_id}")
async def delete_task(task_id: str):
    return await task_controller.delete_task(task_id)
