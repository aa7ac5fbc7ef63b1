"""
Task lifecycle controller tests.

- Draft creation snapshots the service template list and client record
- finalize validates every custom field before leaving draft
- Generation is serialized by the per-task lock
- retry clears generated documents and the error before re-rendering
- complete never reverts when the client follow-up fails
"""
import asyncio
import copy
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import FakeCursor
from services.errors import (
    CompletionPrecondition,
    GenerationInProgress,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from services.generation_pipeline import BatchResult, DocumentGenerationPipeline, GenerationResult, TemplateOutcome
from services.task_service import CLIENT_UPDATE_WARNING, TaskLifecycleController
from services.task_workflow import DocumentStatus

CLIENT = {
    "client_id": "c1",
    "first_name": "Jane",
    "last_name": "Doe",
    "email": "jane@example.com",
    "task_completions": [{"task_id": "older"}],
}
SERVICE = {"service_id": "svc-1", "name": "Tenancy Pack", "is_active": True, "template_ids": ["tpl-a", "tpl-b", "tpl-a"]}
TEMPLATES = [
    {"template_id": "tpl-a", "name": "Lease", "custom_fields": [{"name": "spouse_name", "label": "Spouse Name", "required": True}]},
    {"template_id": "tpl-b", "name": "Notice", "custom_fields": [{"name": "contact_email", "type": "email"}]},
]


def _task(status="draft", **overrides):
    task = {
        "task_id": "task-1",
        "client_id": "c1",
        "service_id": "svc-1",
        "status": status,
        "is_draft": status == "draft",
        "template_ids": ["tpl-a", "tpl-b"],
        "custom_field_values": {},
        "generated_documents": [],
        "signed_documents": [],
        "generation_error": None,
        "generation_lock": None,
    }
    task.update(overrides)
    return task


@pytest.fixture
def pipeline():
    pipeline = MagicMock()
    pipeline.generate = AsyncMock(return_value=GenerationResult(success=True, documents_generated=2))
    return pipeline


@pytest.fixture
def controller(pipeline):
    return TaskLifecycleController(pipeline=pipeline)


@pytest.fixture
def patched(mock_db):
    mock_db.document_templates.find.return_value = FakeCursor(TEMPLATES)
    with patch("services.task_service.database.get_db", return_value=mock_db), \
         patch("services.task_service.create_task_event", new_callable=AsyncMock) as event, \
         patch("services.task_service.create_audit_log", new_callable=AsyncMock) as audit:
        yield {"db": mock_db, "event": event, "audit": audit}


def _lock_token(db, call_index=0):
    return db.tasks.find_one_and_update.call_args_list[call_index][0][1]["$set"]["generation_lock"]["token"]


class TestCreateDraft:
    async def test_creates_draft_with_snapshot(self, controller, patched):
        db = patched["db"]
        db.clients.find_one = AsyncMock(return_value=dict(CLIENT))
        db.services.find_one = AsyncMock(return_value=dict(SERVICE))

        task = await controller.create_draft("c1", "svc-1", initial_fields={"Spouse Name": "John"}, created_by="staff-1")

        assert task["status"] == "draft"
        assert task["is_draft"] is True
        assert task["template_ids"] == ["tpl-a", "tpl-b"]
        assert task["client_name"] == "Jane Doe"
        assert task["service_name"] == "Tenancy Pack"
        assert task["custom_field_values"] == {"spouse_name": "John"}
        assert "task_completions" not in task["client_data_snapshot"]
        db.tasks.insert_one.assert_awaited_once()
        patched["event"].assert_awaited_once()
        assert patched["event"].call_args[0][1:3] == (None, "draft")
        patched["audit"].assert_awaited_once()

    async def test_not_as_draft_starts_in_progress(self, controller, patched):
        db = patched["db"]
        db.clients.find_one = AsyncMock(return_value=dict(CLIENT))
        db.services.find_one = AsyncMock(return_value=dict(SERVICE))
        task = await controller.create_draft("c1", "svc-1", as_draft=False)
        assert task["status"] == "in_progress"
        assert task["is_draft"] is False

    async def test_missing_client(self, controller, patched):
        with pytest.raises(ValidationError, match="Client not found"):
            await controller.create_draft("nope", "svc-1")
        patched["db"].tasks.insert_one.assert_not_called()

    async def test_inactive_service(self, controller, patched):
        db = patched["db"]
        db.clients.find_one = AsyncMock(return_value=dict(CLIENT))
        db.services.find_one = AsyncMock(return_value={**SERVICE, "is_active": False})
        with pytest.raises(ValidationError, match="not active"):
            await controller.create_draft("c1", "svc-1")

    async def test_service_without_templates(self, controller, patched):
        db = patched["db"]
        db.clients.find_one = AsyncMock(return_value=dict(CLIENT))
        db.services.find_one = AsyncMock(return_value={**SERVICE, "template_ids": []})
        with pytest.raises(ValidationError, match="no templates"):
            await controller.create_draft("c1", "svc-1")

    async def test_invalid_priority(self, controller, patched):
        db = patched["db"]
        db.clients.find_one = AsyncMock(return_value=dict(CLIENT))
        db.services.find_one = AsyncMock(return_value=dict(SERVICE))
        with pytest.raises(ValidationError, match="Invalid priority"):
            await controller.create_draft("c1", "svc-1", priority="whenever")


class TestUpdateDraft:
    async def test_merges_custom_values(self, controller, patched):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task(custom_field_values={"spouse_name": "John"}))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task())

        await controller.update_draft("task-1", {"custom_field_values": {"Contact Email": "j@example.com"}, "notes": "x"})

        changes = db.tasks.find_one_and_update.call_args[0][1]["$set"]
        assert changes["custom_field_values"] == {"spouse_name": "John", "contact_email": "j@example.com"}
        assert changes["notes"] == "x"

    async def test_rejects_non_draft(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("in_progress"))
        with pytest.raises(ValidationError, match="Only draft"):
            await controller.update_draft("task-1", {"notes": "x"})

    async def test_rejects_unknown_fields(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task())
        with pytest.raises(ValidationError):
            await controller.update_draft("task-1", {"status": "completed"})

    async def test_unknown_task(self, controller, patched):
        with pytest.raises(NotFoundError):
            await controller.update_draft("missing", {"notes": "x"})


class TestFinalize:
    async def test_validation_issues_block_finalize(self, controller, patched, pipeline):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task(custom_field_values={"spouse_name": "  ", "contact_email": "bad"}))

        with pytest.raises(ValidationError) as exc:
            await controller.finalize("task-1")

        assert sorted(i["rule"] for i in exc.value.issues) == ["email", "required"]
        db.tasks.find_one_and_update.assert_not_called()
        pipeline.generate.assert_not_called()

    async def test_finalize_transitions_then_generates(self, controller, patched, pipeline):
        db = patched["db"]
        values = {"spouse_name": "John"}
        db.tasks.find_one = AsyncMock(side_effect=[
            _task(custom_field_values=values),
            _task("in_progress", custom_field_values=values),
        ])
        locked = _task("in_progress", custom_field_values=values)
        db.tasks.find_one_and_update = AsyncMock(side_effect=[_task("in_progress"), locked])

        result = await controller.finalize("task-1")

        assert result.documents_generated == 2
        transition = db.tasks.find_one_and_update.call_args_list[0][0]
        assert transition[0] == {"task_id": "task-1", "status": "draft"}
        assert transition[1]["$set"]["status"] == "in_progress"
        assert transition[1]["$set"]["is_draft"] is False
        token = _lock_token(db, 1)
        pipeline.generate.assert_awaited_once_with(locked, token)
        db.tasks.update_one.assert_awaited_once()

    async def test_finalize_non_draft(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("awaiting"))
        with pytest.raises(InvalidTransition):
            await controller.finalize("task-1")


class TestGenerationLock:
    async def test_second_trigger_is_rejected(self, controller, patched, pipeline):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task("in_progress"))
        db.tasks.find_one_and_update = AsyncMock(return_value=None)

        with pytest.raises(GenerationInProgress):
            await controller.generate("task-1")

        pipeline.generate.assert_not_called()
        db.tasks.update_one.assert_not_called()

    async def test_lock_query_allows_expired_locks(self, controller, patched):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task("in_progress"))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task("in_progress"))

        await controller.generate("task-1")

        query = db.tasks.find_one_and_update.call_args[0][0]
        assert {"generation_lock": None} in query["$or"]
        assert any("generation_lock.locked_until" in clause for clause in query["$or"])

    async def test_lock_released_when_pipeline_fails(self, controller, patched, pipeline):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task("awaiting"))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task("awaiting"))
        pipeline.generate = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(RuntimeError):
            await controller.generate("task-1")

        release = db.tasks.update_one.call_args[0]
        assert release[0]["generation_lock.token"] == _lock_token(db)
        assert release[1] == {"$set": {"generation_lock": None}}

    async def test_generate_from_draft(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("draft"))
        with pytest.raises(InvalidTransition):
            await controller.generate("task-1")


class TestRetry:
    FAILED_STATE = {
        "generated_documents": [
            {"template_id": "tpl-a", "status": "generated", "storage_path": "c1/task-1/tpl-a.pdf"},
            {"template_id": "tpl-b", "status": "failed", "error": "Template not found"},
        ],
        "generation_error": "Notice: Template not found",
    }

    async def test_retry_from_awaiting_resets_then_regenerates(self, controller, patched, pipeline):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task("awaiting", **self.FAILED_STATE))
        reset_task = _task("in_progress", generated_documents=[], generation_error=None)
        db.tasks.find_one_and_update = AsyncMock(side_effect=[_task("awaiting", **self.FAILED_STATE), reset_task])

        await controller.retry("task-1")

        token = _lock_token(db)
        query, update = db.tasks.find_one_and_update.call_args_list[1][0]
        assert query == {"task_id": "task-1", "status": "awaiting", "generation_lock.token": token}
        assert update["$set"]["status"] == "in_progress"
        assert update["$set"]["generated_documents"] == []
        assert update["$set"]["generation_error"] is None
        pipeline.generate.assert_awaited_once_with(reset_task, token)
        assert patched["event"].call_args[0][1:4] == ("awaiting", "in_progress", "retry")

    async def test_retry_from_in_progress_resets_without_transition(self, controller, patched, pipeline):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task("in_progress", **self.FAILED_STATE))
        reset_task = _task("in_progress")
        db.tasks.find_one_and_update = AsyncMock(side_effect=[_task("in_progress", **self.FAILED_STATE), reset_task])

        await controller.retry("task-1")

        update = db.tasks.find_one_and_update.call_args_list[1][0][1]["$set"]
        assert "status" not in update
        assert update["generated_documents"] == []
        patched["event"].assert_not_called()
        pipeline.generate.assert_awaited_once()

    async def test_retry_completed_task(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("completed"))
        with pytest.raises(InvalidTransition):
            await controller.retry("task-1")


class TestComplete:
    SIGNED_STATE = {
        "generated_documents": [{"template_id": "tpl-a", "template_name": "Lease", "status": "generated"}],
        "signed_documents": [{"template_id": "tpl-a", "storage_path": "c1/task-1/tpl-a/signed-document.pdf"}],
    }

    async def test_unsigned_document_blocks_completion(self, controller, patched):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task(
            "awaiting", generated_documents=self.SIGNED_STATE["generated_documents"]
        ))
        with pytest.raises(CompletionPrecondition, match="Lease"):
            await controller.complete("task-1")
        db.tasks.find_one_and_update.assert_not_called()

    async def test_completes_and_updates_client(self, controller, patched):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task("awaiting", **self.SIGNED_STATE))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task("completed", **self.SIGNED_STATE))
        with patch("services.task_service.enqueue_client_update", new_callable=AsyncMock, return_value={"job_id": "j1"}), \
             patch("services.task_service.process_client_update", new_callable=AsyncMock, return_value=True):
            result = await controller.complete("task-1", completion_data={"fee": 100})

        assert result["success"] is True
        assert result["client_updated"] is True
        assert result["warnings"] == []
        update = db.tasks.find_one_and_update.call_args[0][1]["$set"]
        assert update["status"] == "completed"
        assert update["completion_data"] == {"fee": 100}
        assert update["completed_at"]

    async def test_client_update_failure_is_a_warning(self, controller, patched):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task("awaiting", **self.SIGNED_STATE))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task("completed", **self.SIGNED_STATE))
        with patch("services.task_service.enqueue_client_update", new_callable=AsyncMock, side_effect=RuntimeError("db down")):
            result = await controller.complete("task-1")

        assert result["success"] is True
        assert result["client_updated"] is False
        assert result["warnings"] == [CLIENT_UPDATE_WARNING]
        assert result["task"]["status"] == "completed"

    async def test_concurrent_status_change_is_reported(self, controller, patched):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(side_effect=[
            _task("awaiting", **self.SIGNED_STATE),
            _task("completed", **self.SIGNED_STATE),
        ])
        db.tasks.find_one_and_update = AsyncMock(return_value=None)
        with pytest.raises(InvalidTransition) as exc:
            await controller.complete("task-1")
        assert exc.value.current == "completed"


class TestFiles:
    async def test_signed_upload_replaces_previous_copy(self, controller, patched):
        db = patched["db"]
        previous = {"template_id": "tpl-a", "storage_path": "c1/task-1/tpl-a/signed-document.png", "file_name": "scan.png"}
        db.tasks.find_one = AsyncMock(return_value=_task("awaiting", signed_documents=[previous]))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task("awaiting"))

        with patch("services.task_service.signed_documents_storage.upsert_file", new_callable=AsyncMock) as upsert, \
             patch("services.task_service.signed_documents_storage.delete_file", new_callable=AsyncMock) as delete:
            await controller.attach_signed_document("task-1", "tpl-a", "signed.pdf", b"%PDF-1.4", "application/pdf")

        assert upsert.call_args[0][0] == "c1/task-1/tpl-a/signed-document.pdf"
        delete.assert_awaited_once_with("c1/task-1/tpl-a/signed-document.png")
        signed = db.tasks.find_one_and_update.call_args[0][1]["$set"]["signed_documents"]
        assert len(signed) == 1
        assert signed[0]["file_name"] == "signed.pdf"

    async def test_same_path_reupload_keeps_file(self, controller, patched):
        db = patched["db"]
        previous = {"template_id": "tpl-a", "storage_path": "c1/task-1/tpl-a/signed-document.pdf"}
        db.tasks.find_one = AsyncMock(return_value=_task("awaiting", signed_documents=[previous]))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task("awaiting"))

        with patch("services.task_service.signed_documents_storage.upsert_file", new_callable=AsyncMock), \
             patch("services.task_service.signed_documents_storage.delete_file", new_callable=AsyncMock) as delete:
            await controller.attach_signed_document("task-1", "tpl-a", "v2.pdf", b"%PDF-1.4", "application/pdf")

        delete.assert_not_called()

    async def test_list_task_files(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("awaiting"))
        meta = MagicMock()
        meta.to_dict.return_value = {"path": "c1/task-1/tpl-a.pdf"}
        with patch("services.task_service.task_documents_storage.list_files", new_callable=AsyncMock, return_value=[meta]) as listed, \
             patch("services.task_service.signed_documents_storage.list_files", new_callable=AsyncMock, return_value=[]), \
             patch("services.task_service.additional_files_storage.list_files", new_callable=AsyncMock, return_value=[]):
            files = await controller.list_task_files("task-1")

        assert files == {"task_documents": [{"path": "c1/task-1/tpl-a.pdf"}], "signed_documents": [], "additional_files": []}
        assert listed.call_args.kwargs["prefix"] == "c1/task-1/"

    async def test_signed_upload_requires_awaiting(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("in_progress"))
        with pytest.raises(ValidationError, match="awaiting"):
            await controller.attach_signed_document("task-1", "tpl-a", "s.pdf", b"x", "application/pdf")

    async def test_signed_upload_rejects_type_and_unknown_template(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("awaiting"))
        with pytest.raises(ValidationError, match="not allowed"):
            await controller.attach_signed_document("task-1", "tpl-a", "s.exe", b"x", "application/x-msdownload")
        with pytest.raises(ValidationError, match="not part of task"):
            await controller.attach_signed_document("task-1", "tpl-z", "s.pdf", b"x", "application/pdf")

    async def test_additional_file(self, controller, patched):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task("awaiting"))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task("awaiting"))
        with patch("services.task_service.additional_files_storage.upsert_file", new_callable=AsyncMock) as upsert:
            await controller.attach_additional_file("task-1", "id card.png", b"png", "image/png")

        path = upsert.call_args[0][0]
        assert path.startswith("c1/task-1/additional/")
        assert path.endswith("-id_card.png")
        pushed = db.tasks.find_one_and_update.call_args[0][1]["$push"]["additional_files"]
        assert pushed["storage_path"] == path

    async def test_remove_signed_copy(self, controller, patched):
        db = patched["db"]
        signed = {"template_id": "tpl-a", "storage_path": "c1/task-1/tpl-a/signed-document.pdf"}
        db.tasks.find_one = AsyncMock(return_value=_task("awaiting", signed_documents=[signed]))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task("awaiting"))
        with patch("services.task_service.signed_documents_storage.delete_file", new_callable=AsyncMock, return_value=1) as delete:
            await controller.remove_uploaded_file("task-1", signed["storage_path"], "signed", removed_by="staff-1")

        delete.assert_awaited_once_with(signed["storage_path"])
        query, update = db.tasks.find_one_and_update.call_args[0]
        assert query["status"] == {"$ne": "completed"}
        assert update["$pull"] == {"signed_documents": {"storage_path": signed["storage_path"]}}
        assert patched["audit"].call_args.kwargs["metadata"]["file_type"] == "signed"

    async def test_remove_additional_file_uses_its_bucket(self, controller, patched):
        db = patched["db"]
        extra = {"file_id": "f1", "storage_path": "c1/task-1/additional/f1-id.png"}
        db.tasks.find_one = AsyncMock(return_value=_task("in_progress", additional_files=[extra]))
        db.tasks.find_one_and_update = AsyncMock(return_value=_task("in_progress"))
        with patch("services.task_service.additional_files_storage.delete_file", new_callable=AsyncMock, return_value=1) as delete, \
             patch("services.task_service.signed_documents_storage.delete_file", new_callable=AsyncMock) as signed_delete:
            await controller.remove_uploaded_file("task-1", extra["storage_path"], "additional")

        delete.assert_awaited_once_with(extra["storage_path"])
        signed_delete.assert_not_called()

    async def test_remove_refused_on_completed_task(self, controller, patched):
        signed = {"template_id": "tpl-a", "storage_path": "c1/task-1/tpl-a/signed-document.pdf"}
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("completed", signed_documents=[signed]))
        with patch("services.task_service.signed_documents_storage.delete_file", new_callable=AsyncMock) as delete:
            with pytest.raises(ValidationError, match="completed"):
                await controller.remove_uploaded_file("task-1", signed["storage_path"])
        delete.assert_not_called()
        patched["db"].tasks.find_one_and_update.assert_not_called()

    async def test_remove_unknown_path_or_type(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("awaiting"))
        with pytest.raises(NotFoundError):
            await controller.remove_uploaded_file("task-1", "c1/task-1/nope.pdf")
        with pytest.raises(ValidationError, match="Unknown file type"):
            await controller.remove_uploaded_file("task-1", "c1/task-1/nope.pdf", "generated")

    async def test_download_missing_document(self, controller, patched):
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("awaiting"))
        with pytest.raises(NotFoundError):
            await controller.download_generated_document("task-1", "tpl-a")


class TestDelete:
    async def test_delete_refused_while_generating(self, controller, patched):
        lock = {"token": "t", "locked_until": datetime.now(timezone.utc) + timedelta(minutes=5)}
        patched["db"].tasks.find_one = AsyncMock(return_value=_task("in_progress", generation_lock=lock))
        with pytest.raises(GenerationInProgress):
            await controller.delete_task("task-1")
        patched["db"].tasks.delete_one.assert_not_called()

    async def test_delete_reclaims_storage(self, controller, patched):
        db = patched["db"]
        db.tasks.find_one = AsyncMock(return_value=_task("awaiting"))
        reclaimed = {"task_documents": 2, "signed_documents": 1, "additional_files": 0}
        with patch("services.task_service.reclaim_task_storage", new_callable=AsyncMock, return_value=reclaimed) as reclaim:
            result = await controller.delete_task("task-1")

        reclaim.assert_awaited_once_with("c1", "task-1")
        assert result["reclaimed"] == reclaimed
        db.tasks.delete_one.assert_awaited_once_with({"task_id": "task-1"})
        db.client_update_queue.delete_many.assert_awaited_once_with({"task_id": "task-1"})


class _StoredTask:
    """One task document behind db.tasks, evaluating the filters the controller writes with."""

    def __init__(self, doc):
        self.doc = copy.deepcopy(doc)

    def _value(self, key):
        value = self.doc
        for part in key.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        return value

    def _matches(self, query):
        for key, cond in query.items():
            if key == "$or":
                if not any(self._matches(clause) for clause in cond):
                    return False
                continue
            value = self._value(key)
            if isinstance(cond, dict) and "$exists" in cond:
                ok = (key in self.doc) == cond["$exists"]
            elif isinstance(cond, dict) and "$lt" in cond:
                ok = value is not None and value < cond["$lt"]
            else:
                ok = value == cond
            if not ok:
                return False
        return True

    def find_one(self, query, *args, **kwargs):
        return copy.deepcopy(self.doc) if self._matches(query) else None

    def find_one_and_update(self, query, update, *args, **kwargs):
        if not self._matches(query):
            return None
        self.doc.update(update.get("$set", {}))
        return copy.deepcopy(self.doc)

    def update_one(self, query, update):
        if self._matches(query):
            self.doc.update(update.get("$set", {}))

    def attach(self, db):
        db.tasks.find_one = AsyncMock(side_effect=self.find_one)
        db.tasks.find_one_and_update = AsyncMock(side_effect=self.find_one_and_update)
        db.tasks.update_one = AsyncMock(side_effect=self.update_one)


class TestCompleteDuringRegenerate:
    SIGNED_AWAITING = {
        "template_ids": ["tpl-a"],
        "generated_documents": [{"template_id": "tpl-a", "template_name": "Lease", "status": "generated"}],
        "signed_documents": [{"template_id": "tpl-a", "storage_path": "c1/task-1/tpl-a/signed-document.pdf"}],
    }

    @pytest.fixture
    def blocked(self):
        started, release = asyncio.Event(), asyncio.Event()
        pipeline = DocumentGenerationPipeline()

        async def run_batch(task):
            started.set()
            await release.wait()
            outcome = TemplateOutcome("tpl-a", "Lease", DocumentStatus.GENERATED, storage_path="c1/task-1/tpl-a.pdf")
            return BatchResult.fold([outcome]), []

        pipeline.run_batch = run_batch
        with patch("services.generation_pipeline.create_task_event", new_callable=AsyncMock), \
             patch("services.task_service.enqueue_client_update", new_callable=AsyncMock, return_value={"job_id": "j1"}), \
             patch("services.task_service.process_client_update", new_callable=AsyncMock, return_value=True):
            yield TaskLifecycleController(pipeline=pipeline), started, release

    async def test_complete_refused_while_regenerate_runs(self, patched, blocked):
        controller, started, release = blocked
        store = _StoredTask(_task("awaiting", **self.SIGNED_AWAITING))
        store.attach(patched["db"])

        regenerate = asyncio.create_task(controller.generate("task-1"))
        await started.wait()
        with pytest.raises(GenerationInProgress):
            await controller.complete("task-1")
        assert store.doc["status"] == "awaiting"

        release.set()
        result = await regenerate
        assert result.success
        assert store.doc["status"] == "awaiting"
        assert store.doc["generation_lock"] is None
        assert "completed_at" not in store.doc

    async def test_completed_task_is_not_overwritten_by_stale_regenerate(self, patched, blocked):
        controller, started, release = blocked
        store = _StoredTask(_task("awaiting", **self.SIGNED_AWAITING))
        store.attach(patched["db"])

        regenerate = asyncio.create_task(controller.generate("task-1"))
        await started.wait()
        store.doc["generation_lock"]["locked_until"] = datetime.now(timezone.utc) - timedelta(seconds=1)
        completed = await controller.complete("task-1")
        assert completed["task"]["status"] == "completed"

        release.set()
        with pytest.raises(InvalidTransition) as exc:
            await regenerate
        assert exc.value.current == "completed"
        assert store.doc["status"] == "completed"
        assert store.doc["generated_documents"] == self.SIGNED_AWAITING["generated_documents"]
