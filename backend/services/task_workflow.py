"""
Task Workflow State Machine
Defines the task states, the transition whitelist, and the read-only views
(available actions, progress) derived from a task document.

draft → in_progress → awaiting → completed
awaiting → in_progress only through an explicit retry.
"""
from enum import Enum
from typing import List, Dict, Any, Set


class TaskStatus(str, Enum):
    DRAFT = "draft"                    # Collecting field values, nothing rendered
    IN_PROGRESS = "in_progress"        # Generation pending or running
    AWAITING = "awaiting"              # Documents generated, waiting for signed copies
    COMPLETED = "completed"            # Terminal


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class DocumentStatus(str, Enum):
    """Status of a single generated_documents entry."""
    PENDING = "pending"
    GENERATED = "generated"
    FAILED = "failed"


class TransitionTrigger(str, Enum):
    FINALIZE = "finalize"
    GENERATION = "generation"
    RETRY = "retry"
    COMPLETION = "completion"
    CREATE = "create"


ALLOWED_TRANSITIONS: Dict[TaskStatus, List[TaskStatus]] = {
    TaskStatus.DRAFT: [TaskStatus.IN_PROGRESS],
    TaskStatus.IN_PROGRESS: [TaskStatus.AWAITING],
    TaskStatus.AWAITING: [TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS],
    TaskStatus.COMPLETED: [],
}

# Transitions that only a retry may perform
RETRY_ONLY_TRANSITIONS: Set[tuple] = {
    (TaskStatus.AWAITING, TaskStatus.IN_PROGRESS),
}

TERMINAL_STATES: Set[TaskStatus] = {TaskStatus.COMPLETED}

# Statuses from which a generation batch may be started
GENERATABLE_STATES: Set[TaskStatus] = {TaskStatus.IN_PROGRESS, TaskStatus.AWAITING}


def is_valid_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, [])


def get_allowed_transitions(current_status: TaskStatus) -> List[TaskStatus]:
    return ALLOWED_TRANSITIONS.get(current_status, [])


def requires_retry(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    return (from_status, to_status) in RETRY_ONLY_TRANSITIONS


def is_terminal(status: TaskStatus) -> bool:
    return status in TERMINAL_STATES


def has_generated_documents(task: Dict[str, Any]) -> bool:
    return any(
        doc.get("status") == DocumentStatus.GENERATED.value
        for doc in task.get("generated_documents") or []
    )


def get_workflow_status(task: Dict[str, Any]) -> Dict[str, Any]:
    """
    Describe what can be done with a task right now.
    Returns flags plus required/available action lists for the UI.
    """
    status = task.get("status")
    result = {
        "current_status": status,
        "can_generate_documents": False,
        "can_upload_signed": False,
        "can_complete": False,
        "can_retry": False,
        "required_actions": [],
        "available_actions": [],
    }

    if status == TaskStatus.DRAFT.value:
        result["required_actions"].append("Finalize the draft to start document generation")
        result["available_actions"].append({
            "action": "finalize",
            "label": "Finalize Draft",
            "description": "Validate field values and generate documents",
        })

    elif status == TaskStatus.IN_PROGRESS.value:
        result["can_generate_documents"] = True
        result["required_actions"].append("Generate documents to proceed")
        result["available_actions"].append({
            "action": "generate",
            "label": "Generate Documents",
            "description": "Create documents from templates",
        })

    elif status == TaskStatus.AWAITING.value:
        from services.completion_validator import check_completion

        has_generated = has_generated_documents(task)
        completion = check_completion(task)

        if has_generated:
            result["can_upload_signed"] = True
            result["available_actions"].append({
                "action": "download",
                "label": "Download Documents",
                "description": "Download generated documents for signing",
            })
            if completion["missing_template_ids"]:
                result["required_actions"].append("Upload signed documents to complete")
            result["available_actions"].append({
                "action": "upload_signed",
                "label": "Upload Signed Documents",
                "description": "Upload signed versions of documents",
            })

        if completion["can_complete"]:
            result["can_complete"] = True
            result["available_actions"].append({
                "action": "complete",
                "label": "Complete Task",
                "description": "Mark task as completed",
            })

    if task.get("generation_error") and status in (TaskStatus.IN_PROGRESS.value, TaskStatus.AWAITING.value):
        result["can_retry"] = True
        result["available_actions"].append({
            "action": "retry",
            "label": "Retry Generation",
            "description": "Discard generated documents and render again",
        })

    return result


def get_task_progress(task: Dict[str, Any]) -> Dict[str, Any]:
    """Four-step progress view: created, generated, signed, completed."""
    total_steps = 4
    current_step = 1
    completed_steps = 0
    steps = [
        {"name": "Task Created", "completed": True, "current": False},
        {"name": "Documents Generated", "completed": False, "current": False},
        {"name": "Documents Signed", "completed": False, "current": False},
        {"name": "Task Completed", "completed": False, "current": False},
    ]

    status = task.get("status")
    if status in (TaskStatus.DRAFT.value, TaskStatus.IN_PROGRESS.value):
        completed_steps = 1
        steps[1]["current"] = True
    elif status == TaskStatus.AWAITING.value:
        if has_generated_documents(task):
            completed_steps = 2
            steps[1]["completed"] = True
            if task.get("signed_documents"):
                completed_steps = 3
                steps[2]["completed"] = True
                steps[3]["current"] = True
                current_step = 4
            else:
                steps[2]["current"] = True
                current_step = 3
        else:
            completed_steps = 1
            steps[1]["current"] = True
            current_step = 2
    elif status == TaskStatus.COMPLETED.value:
        completed_steps = 4
        current_step = 4
        for step in steps:
            step["completed"] = True
            step["current"] = False

    return {
        "current_step": current_step,
        "total_steps": total_steps,
        "completed_steps": completed_steps,
        "progress": round(completed_steps / total_steps * 100),
        "steps": steps,
    }
