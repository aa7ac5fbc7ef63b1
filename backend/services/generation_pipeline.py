"""
Document Generation Pipeline - renders one document per template for a task.

FLOW (per template, all templates concurrently):
Load template → active check → build render data → validate declared fields →
load source → render (worker thread) → upsert to storage → outcome entry

A template's failure never cancels the others. Each template is bounded by
GENERATION_TEMPLATE_TIMEOUT_SECONDS and the whole batch by
GENERATION_BATCH_TIMEOUT_SECONDS; templates still running at the batch deadline
are cancelled and recorded as failed.

Outcomes are folded into an immutable BatchResult which decides what is
written back onto the task:
- nothing rendered   → generation_error = every failure, status unchanged
- some failed         → generation_error = failed subset, status → awaiting
- everything rendered → generation_error cleared, status → awaiting

generated_documents is replaced wholesale, one entry per template id, in the
task's template order.
"""
import os
import re
import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import reduce
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ReturnDocument

from database import database
from models import TemplateStatus
from services.document_renderer import get_renderer
from services.errors import (
    GenerationInProgress,
    InvalidTransition,
    PartialGenerationFailure,
    TotalGenerationFailure,
)
from services.field_resolution import (
    build_render_data,
    describe_conflict,
    detect_field_conflicts,
    validate_field_values,
)
from services.field_schema import get_client_field_types
from services.storage_adapter import (
    generated_document_path,
    task_documents_storage,
    template_files_storage,
)
from services.task_events import create_task_event
from services.task_workflow import DocumentStatus, TaskStatus, TransitionTrigger

logger = logging.getLogger(__name__)

GENERATION_TEMPLATE_TIMEOUT_SECONDS = float(os.getenv("GENERATION_TEMPLATE_TIMEOUT_SECONDS", "60"))
GENERATION_BATCH_TIMEOUT_SECONDS = float(os.getenv("GENERATION_BATCH_TIMEOUT_SECONDS", "300"))
MAX_ERROR_MESSAGE_LENGTH = 1000


@dataclass(frozen=True)
class TemplateOutcome:
    """Result of rendering one template."""
    template_id: str
    template_name: str
    status: DocumentStatus
    file_name: Optional[str] = None
    storage_path: Optional[str] = None
    generated_at: Optional[str] = None
    error: Optional[str] = None
    size_bytes: Optional[int] = None
    sha256_hash: Optional[str] = None
    missing_fields: Tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == DocumentStatus.GENERATED

    def to_dict(self) -> Dict[str, Any]:
        doc = {
            "template_id": self.template_id,
            "template_name": self.template_name,
            "file_name": self.file_name,
            "status": self.status.value,
        }
        if self.succeeded:
            doc.update({
                "storage_path": self.storage_path,
                "generated_at": self.generated_at,
                "size_bytes": self.size_bytes,
                "sha256_hash": self.sha256_hash,
                "missing_fields": list(self.missing_fields),
            })
        else:
            doc["error"] = self.error
        return doc


def failed_outcome(template_id: str, template_name: Optional[str], error: str) -> TemplateOutcome:
    return TemplateOutcome(
        template_id=template_id,
        template_name=template_name or template_id,
        status=DocumentStatus.FAILED,
        error=(error or "Unknown error")[:MAX_ERROR_MESSAGE_LENGTH],
    )


@dataclass(frozen=True)
class BatchResult:
    succeeded: Tuple[TemplateOutcome, ...] = ()
    failed: Tuple[TemplateOutcome, ...] = ()

    def add(self, outcome: TemplateOutcome) -> "BatchResult":
        if outcome.succeeded:
            return replace(self, succeeded=self.succeeded + (outcome,))
        return replace(self, failed=self.failed + (outcome,))

    @classmethod
    def fold(cls, outcomes) -> "BatchResult":
        return reduce(cls.add, outcomes, cls())

    @property
    def classification(self) -> Optional[type]:
        """None when every template rendered."""
        if not self.succeeded:
            return TotalGenerationFailure
        if self.failed:
            return PartialGenerationFailure
        return None

    @property
    def error_summary(self) -> Optional[str]:
        if not self.failed:
            return None
        return "; ".join(f"{o.template_name}: {o.error}" for o in self.failed)

    def ordered(self, template_ids: List[str]) -> List[TemplateOutcome]:
        by_id = {o.template_id: o for o in self.succeeded + self.failed}
        return [by_id[tid] for tid in template_ids if tid in by_id]


@dataclass
class GenerationResult:
    success: bool
    documents_generated: int
    warnings: List[str] = field(default_factory=list)
    generation_error: Optional[str] = None
    classification: Optional[str] = None
    task: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "documents_generated": self.documents_generated,
            "warnings": self.warnings,
            "generation_error": self.generation_error,
            "classification": self.classification,
            "task": self.task,
        }


def build_document_file_name(client_name: str, template_name: str, extension: str, now: Optional[datetime] = None) -> str:
    """Download name: {Client}_{Template}_{YYYY-MM-DD}.{ext}"""
    now = now or datetime.now(timezone.utc)

    def _clean(value: str) -> str:
        return re.sub(r"\s+", "_", re.sub(r"[^a-zA-Z0-9\s]", "", value or "").strip())

    parts = [p for p in (_clean(client_name), _clean(template_name), now.strftime("%Y-%m-%d")) if p]
    return f"{'_'.join(parts)}.{extension}"


class DocumentGenerationPipeline:
    def __init__(
        self,
        template_timeout: Optional[float] = None,
        batch_timeout: Optional[float] = None,
    ):
        self.template_timeout = template_timeout or GENERATION_TEMPLATE_TIMEOUT_SECONDS
        self.batch_timeout = batch_timeout or GENERATION_BATCH_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def _load_templates(self, template_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        db = database.get_db()
        cursor = db.document_templates.find({"template_id": {"$in": template_ids}}, {"_id": 0})
        return {t["template_id"]: t for t in await cursor.to_list(None)}

    async def _load_client(self, task: Dict[str, Any]) -> Dict[str, Any]:
        """Live client record, falling back to the snapshot taken at task creation."""
        db = database.get_db()
        client = await db.clients.find_one({"client_id": task.get("client_id")}, {"_id": 0})
        if client:
            return client
        logger.warning(f"Client {task.get('client_id')} not found, rendering task {task.get('task_id')} from snapshot")
        return task.get("client_data_snapshot") or {}

    async def _load_source(self, template: Dict[str, Any]):
        if template.get("docx_file_path"):
            content, _ = await template_files_storage.download_file(template["docx_file_path"])
            return content
        return template.get("html_content")

    # ------------------------------------------------------------------
    # Per-template
    # ------------------------------------------------------------------

    async def render_template(
        self,
        task: Dict[str, Any],
        template_id: str,
        template: Optional[Dict[str, Any]],
        client: Dict[str, Any],
        field_types: Dict[str, str],
    ) -> TemplateOutcome:
        if template is None:
            return failed_outcome(template_id, None, "Template not found")

        name = template.get("name") or template_id
        status = template.get("status")
        if status != TemplateStatus.ACTIVE.value:
            return failed_outcome(template_id, name, f"Template is not active (status: {status})")

        custom_values = task.get("custom_field_values") or {}
        issues = validate_field_values(template.get("custom_fields"), custom_values)
        if issues:
            return failed_outcome(template_id, name, "; ".join(i["message"] for i in issues))

        data = build_render_data(
            client,
            custom_fields=template.get("custom_fields"),
            custom_field_values=custom_values,
            field_mappings=template.get("field_mappings"),
            field_types=field_types,
        )

        renderer = get_renderer(template)
        source = await self._load_source(template)
        rendered = await asyncio.to_thread(renderer.render, source, data)

        path = generated_document_path(task["client_id"], task["task_id"], template_id, rendered.extension)
        file_name = build_document_file_name(task.get("client_name") or data.get("full_name", ""), name, rendered.extension)
        await task_documents_storage.upsert_file(
            path,
            rendered.content,
            rendered.content_type,
            metadata={"task_id": task["task_id"], "template_id": template_id, "file_name": file_name},
        )

        return TemplateOutcome(
            template_id=template_id,
            template_name=name,
            status=DocumentStatus.GENERATED,
            file_name=file_name,
            storage_path=path,
            generated_at=datetime.now(timezone.utc).isoformat(),
            size_bytes=rendered.size_bytes,
            sha256_hash=rendered.sha256_hash,
            missing_fields=tuple(rendered.missing_fields),
        )

    async def _render_bounded(self, task, template_id, template, client, field_types) -> TemplateOutcome:
        name = (template or {}).get("name")
        try:
            return await asyncio.wait_for(
                self.render_template(task, template_id, template, client, field_types),
                timeout=self.template_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Template {template_id} timed out after {self.template_timeout}s (task {task['task_id']})")
            return failed_outcome(template_id, name, f"Rendering timed out after {self.template_timeout:g}s")
        except Exception as e:
            logger.error(f"Template {template_id} failed for task {task['task_id']}: {e}")
            return failed_outcome(template_id, name, str(e))

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def run_batch(self, task: Dict[str, Any]) -> Tuple[BatchResult, List[Dict[str, Any]]]:
        """Render every template of the task. Returns the batch and the conflict reports."""
        template_ids = list(task.get("template_ids") or [])
        if not template_ids:
            return BatchResult(), []
        templates = await self._load_templates(template_ids)
        client = await self._load_client(task)
        field_types = get_client_field_types()

        pending_by_id = {
            template_id: asyncio.create_task(
                self._render_bounded(task, template_id, templates.get(template_id), client, field_types)
            )
            for template_id in template_ids
        }
        done, pending = await asyncio.wait(pending_by_id.values(), timeout=self.batch_timeout)
        for job in pending:
            job.cancel()

        outcomes = []
        for template_id, job in pending_by_id.items():
            if job in done:
                outcomes.append(job.result())
            else:
                name = (templates.get(template_id) or {}).get("name")
                outcomes.append(failed_outcome(template_id, name, "Generation batch timed out"))

        conflicts = detect_field_conflicts(t for t in templates.values())
        return BatchResult.fold(outcomes), conflicts

    async def generate(self, task: Dict[str, Any], lock_token: str) -> GenerationResult:
        """
        Run the batch and write it back onto the task.

        The write is fenced on lock_token and on the status the task was read
        with. If the task was completed meanwhile the results are discarded and
        InvalidTransition is raised; if only the lock was lost, GenerationInProgress.
        """
        db = database.get_db()
        task_id = task["task_id"]
        batch, conflicts = await self.run_batch(task)

        entries = [o.to_dict() for o in batch.ordered(task.get("template_ids") or [])]
        now = datetime.now(timezone.utc).isoformat()
        classification = batch.classification
        current_status = task.get("status")

        update: Dict[str, Any] = {
            "generated_documents": entries,
            "generation_error": batch.error_summary,
            "updated_at": now,
        }
        new_status = current_status
        if classification is not TotalGenerationFailure:
            update["generation_completed_at"] = now
            new_status = TaskStatus.AWAITING.value
            update["status"] = new_status

        updated = await db.tasks.find_one_and_update(
            {"task_id": task_id, "status": current_status, "generation_lock.token": lock_token},
            {"$set": update},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            latest = await db.tasks.find_one({"task_id": task_id}, {"_id": 0, "status": 1})
            if latest and latest.get("status") == TaskStatus.COMPLETED.value:
                logger.warning(f"Task {task_id}: completed during generation, discarding batch results")
                raise InvalidTransition(TaskStatus.COMPLETED.value, new_status, [])
            logger.warning(f"Task {task_id}: generation lock lost, discarding batch results")
            raise GenerationInProgress(
                "Generation lock was lost before results were written",
                {"task_id": task_id},
            )

        if new_status != current_status:
            await create_task_event(
                task_id,
                current_status,
                new_status,
                TransitionTrigger.GENERATION.value,
                metadata={"succeeded": len(batch.succeeded), "failed": len(batch.failed)},
            )

        warnings = [f"{o.template_name}: {o.error}" for o in batch.failed]
        warnings.extend(describe_conflict(c) for c in conflicts)
        for outcome in batch.succeeded:
            if outcome.missing_fields:
                warnings.append(f"{outcome.template_name}: missing values for {', '.join(outcome.missing_fields)}")

        if classification is TotalGenerationFailure:
            logger.error(f"Task {task_id}: all {len(batch.failed)} template(s) failed")
        elif classification is PartialGenerationFailure:
            logger.warning(f"Task {task_id}: {len(batch.succeeded)} generated, {len(batch.failed)} failed")
        else:
            logger.info(f"Task {task_id}: {len(batch.succeeded)} document(s) generated")

        return GenerationResult(
            success=classification is not TotalGenerationFailure,
            documents_generated=len(batch.succeeded),
            warnings=warnings,
            generation_error=batch.error_summary,
            classification=classification.error_type if classification else None,
            task=updated,
        )


document_generation_pipeline = DocumentGenerationPipeline()
