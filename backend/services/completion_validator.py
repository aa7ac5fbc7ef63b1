"""
Completion Validator - checks a task may move to completed.

Requirements, all checked and all reported together:
1. status is awaiting
2. at least one generated document
3. every generated document has a signed copy for the same template
Signed copies without a generated counterpart are ignored.
"""
import logging
from typing import Any, Dict, List

from services.errors import CompletionPrecondition
from services.task_workflow import DocumentStatus, TaskStatus

logger = logging.getLogger(__name__)


def check_completion(task: Dict[str, Any]) -> Dict[str, Any]:
    """Non-raising form used by the completion preview endpoint."""
    reasons: List[str] = []
    missing: List[str] = []

    status = task.get("status")
    if status != TaskStatus.AWAITING.value:
        reasons.append(f"Task must be awaiting signed documents (current status: {status})")

    generated = [
        doc for doc in task.get("generated_documents") or []
        if doc.get("status") == DocumentStatus.GENERATED.value
    ]
    if not generated:
        reasons.append("No documents have been generated")

    signed_ids = {doc.get("template_id") for doc in task.get("signed_documents") or []}
    for doc in generated:
        if doc.get("template_id") not in signed_ids:
            missing.append(doc.get("template_id"))
    if missing:
        names = [doc.get("template_name") or doc.get("template_id") for doc in generated if doc.get("template_id") in missing]
        reasons.append(f"Missing signed documents for: {', '.join(names)}")

    return {
        "can_complete": not reasons,
        "reasons": reasons,
        "missing_template_ids": missing,
        "generated_count": len(generated),
        "signed_count": len(signed_ids),
    }


def validate_completion(task: Dict[str, Any]) -> None:
    """Raise CompletionPrecondition listing every unmet requirement."""
    check = check_completion(task)
    if not check["can_complete"]:
        logger.info(f"Task {task.get('task_id')} cannot complete: {check['reasons']}")
        raise CompletionPrecondition(check["reasons"], check["missing_template_ids"])
