from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

from services.task_workflow import TaskStatus, TaskPriority


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class TemplateStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class AuditAction(str, Enum):
    # Tasks
    TASK_CREATED = "TASK_CREATED"
    TASK_DRAFT_UPDATED = "TASK_DRAFT_UPDATED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_DELETED = "TASK_DELETED"
    SIGNED_DOCUMENT_UPLOADED = "SIGNED_DOCUMENT_UPLOADED"
    ADDITIONAL_FILE_UPLOADED = "ADDITIONAL_FILE_UPLOADED"
    UPLOADED_FILE_REMOVED = "UPLOADED_FILE_REMOVED"

    # Templates
    TEMPLATES_BACKED_UP = "TEMPLATES_BACKED_UP"
    TEMPLATE_MIGRATED = "TEMPLATE_MIGRATED"
    TEMPLATE_MIGRATION_FAILED = "TEMPLATE_MIGRATION_FAILED"


# ============================================================================
# TASKS
# ============================================================================

class SignedDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    template_id: str
    storage_path: str
    file_name: str
    content_type: str
    size_bytes: int = 0
    uploaded_by: Optional[str] = None
    uploaded_at: str = Field(default_factory=_now_iso)


class AdditionalFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    storage_path: str
    file_name: str
    content_type: str
    size_bytes: int = 0
    description: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: str = Field(default_factory=_now_iso)


class Task(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: TaskStatus = TaskStatus.DRAFT
    is_draft: bool = True

    client_id: str
    service_id: str
    client_name: str = ""
    service_name: str = ""
    template_ids: List[str] = Field(default_factory=list)
    client_data_snapshot: Dict[str, Any] = Field(default_factory=dict)
    custom_field_values: Dict[str, Any] = Field(default_factory=dict)

    generated_documents: List[Dict[str, Any]] = Field(default_factory=list)
    signed_documents: List[Dict[str, Any]] = Field(default_factory=list)
    additional_files: List[Dict[str, Any]] = Field(default_factory=list)
    generation_error: Optional[str] = None
    generation_lock: Optional[Dict[str, Any]] = None

    notes: Optional[str] = None
    priority: TaskPriority = TaskPriority.NORMAL
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None
    completion_data: Optional[Dict[str, Any]] = None

    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
    generation_completed_at: Optional[str] = None
    completed_at: Optional[str] = None


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_id: Optional[str] = None
    client_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
