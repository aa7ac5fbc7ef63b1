"""
Schema Drift Analyzer & Migration Planner.

When the client field schema changes, templates that reference removed or
retyped fields need attention. This module:

1. Diffs two schema snapshots into a change set (added, removed, type_changed)
   plus every plausible rename (removed × added pairs with similarity > 0.6,
   ranked, never auto-resolved).
2. Scans templates for references to the changed fields.
3. Turns the caller's rename decisions into a per-template migration plan.
4. Applies the plan: rewrites {{tokens}} in HTML markup and DOCX sources,
   field_mappings values and custom field names, and appends a migration log.
   A best-effort backup of the affected templates is taken first.

Type changes are advisory: they are logged on the template and nothing is
rewritten.
"""
import re
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from database import database
from models import AuditAction
from services.document_renderer import TOKEN_PATTERN, removed_field_marker, rewrite_docx_text
from services.errors import MigrationConflict, NotFoundError
from services.storage_adapter import template_files_storage
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

RENAME_SIMILARITY_THRESHOLD = 0.6

ACTION_RENAME = "rename_field"
ACTION_REMOVE = "remove_field"
ACTION_NOTE_TYPE = "note_type_change"

SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"


# ============================================================================
# ANALYSIS
# ============================================================================

def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """(maxLen - edit distance) / maxLen, in [0, 1]."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    return (longer - levenshtein(a, b)) / longer


def _by_name(fields: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, Dict[str, Any]]:
    return {f["name"]: f for f in fields or [] if isinstance(f, dict) and f.get("name")}


def analyze_schema_change(
    old_fields: Iterable[Dict[str, Any]],
    new_fields: Iterable[Dict[str, Any]],
) -> Dict[str, Any]:
    old = _by_name(old_fields)
    new = _by_name(new_fields)

    added = [new[name] for name in new if name not in old]
    removed = [old[name] for name in old if name not in new]
    type_changed = [
        {**new[name], "old_type": old[name].get("type")}
        for name in new
        if name in old and old[name].get("type") != new[name].get("type")
    ]

    potential_renames = []
    for r in removed:
        for a in added:
            score = similarity(r["name"], a["name"])
            if score > RENAME_SIMILARITY_THRESHOLD:
                potential_renames.append({
                    "old_field": r["name"],
                    "new_field": a["name"],
                    "similarity": round(score, 4),
                })
    potential_renames.sort(key=lambda p: (-p["similarity"], p["old_field"], p["new_field"]))

    result = {
        "added": added,
        "removed": removed,
        "type_changed": type_changed,
        "potential_renames": potential_renames,
        "has_changes": bool(added or removed or type_changed),
    }
    logger.info(
        f"Schema change: {len(added)} added, {len(removed)} removed, "
        f"{len(type_changed)} type changed, {len(potential_renames)} rename candidate(s)"
    )
    return result


def unambiguous_renames(change_set: Dict[str, Any]) -> Dict[str, str]:
    """
    Renames where the removed field and the added field are each other's
    single best candidate. Everything else is left for the caller to decide.
    """
    candidates = change_set.get("potential_renames") or []
    best_for_old: Dict[str, Tuple[float, List[str]]] = {}
    best_for_new: Dict[str, Tuple[float, List[str]]] = {}
    for c in candidates:
        for key, other, table in ((c["old_field"], c["new_field"], best_for_old), (c["new_field"], c["old_field"], best_for_new)):
            score, names = table.get(key, (-1.0, []))
            if c["similarity"] > score:
                table[key] = (c["similarity"], [other])
            elif c["similarity"] == score:
                names.append(other)

    renames = {}
    for old_name, (_, news) in best_for_old.items():
        if len(news) != 1:
            continue
        new_name = news[0]
        _, olds = best_for_new.get(new_name, (0, []))
        if olds == [old_name]:
            renames[old_name] = new_name
    return renames


def template_field_references(template: Dict[str, Any]) -> Dict[str, List[str]]:
    """field name → where the template uses it (mapping placeholders, custom field, markup)."""
    refs: Dict[str, List[str]] = {}
    for placeholder, field_name in (template.get("field_mappings") or {}).items():
        if field_name:
            refs.setdefault(field_name, []).append(f"mapping:{placeholder}")
    for field in template.get("custom_fields") or []:
        if isinstance(field, dict) and field.get("name"):
            refs.setdefault(field["name"], []).append("custom_field")
    for token in sorted(set(TOKEN_PATTERN.findall(template.get("html_content") or ""))):
        refs.setdefault(token, []).append("markup")
    return refs


def assess_template(template: Dict[str, Any], change_set: Dict[str, Any]) -> List[Dict[str, Any]]:
    refs = template_field_references(template)
    issues = []
    for field in change_set.get("removed") or []:
        name = field["name"]
        if name in refs:
            issues.append({
                "type": "field_removed",
                "severity": SEVERITY_HIGH,
                "field_name": name,
                "references": refs[name],
                "message": f"Field '{name}' was removed from the schema",
            })
    for field in change_set.get("type_changed") or []:
        name = field["name"]
        if name in refs:
            issues.append({
                "type": "field_type_changed",
                "severity": SEVERITY_MEDIUM,
                "field_name": name,
                "old_type": field.get("old_type"),
                "new_type": field.get("type"),
                "references": refs[name],
                "message": f"Field '{name}' changed type from {field.get('old_type')} to {field.get('type')}",
            })
    return issues


async def find_affected_templates(change_set: Dict[str, Any]) -> List[Dict[str, Any]]:
    db = database.get_db()
    cursor = db.document_templates.find(
        {},
        {"_id": 0, "template_id": 1, "name": 1, "status": 1, "field_mappings": 1, "custom_fields": 1, "html_content": 1},
    )
    affected = []
    async for template in cursor:
        issues = assess_template(template, change_set)
        if issues:
            affected.append({
                "template_id": template["template_id"],
                "template_name": template.get("name"),
                "status": template.get("status"),
                "issues": issues,
            })
    logger.info(f"Schema change affects {len(affected)} template(s)")
    return affected


# ============================================================================
# PLANNING
# ============================================================================

def _check_renames(renames: Dict[str, str], change_set: Dict[str, Any]) -> None:
    removed = {f["name"] for f in change_set.get("removed") or []}
    added = {f["name"] for f in change_set.get("added") or []}

    conflicts = []
    for old_name, new_name in renames.items():
        if old_name not in removed:
            conflicts.append(f"'{old_name}' is not a removed field")
        if new_name not in added:
            conflicts.append(f"rename target '{new_name}' is not an added field")
    targets: Dict[str, List[str]] = {}
    for old_name, new_name in renames.items():
        targets.setdefault(new_name, []).append(old_name)
    for new_name, olds in targets.items():
        if len(olds) > 1:
            conflicts.append(f"'{new_name}' is claimed by {sorted(olds)}")
    if conflicts:
        raise MigrationConflict("Invalid rename choices: " + "; ".join(conflicts), {"conflicts": conflicts})


def generate_migration_plan(
    affected_templates: List[Dict[str, Any]],
    change_set: Dict[str, Any],
    user_choices: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    One entry per affected template. Removed fields become rename_field when the
    caller accepted a rename for them, otherwise remove_field.
    """
    renames = dict((user_choices or {}).get("renames") or {})
    _check_renames(renames, change_set)

    entries = []
    for template in affected_templates:
        actions = []
        for issue in template.get("issues") or []:
            name = issue["field_name"]
            if issue["type"] == "field_removed":
                if name in renames:
                    actions.append({"type": ACTION_RENAME, "old_field": name, "new_field": renames[name]})
                else:
                    actions.append({"type": ACTION_REMOVE, "field_name": name})
            elif issue["type"] == "field_type_changed":
                actions.append({
                    "type": ACTION_NOTE_TYPE,
                    "field_name": name,
                    "old_type": issue.get("old_type"),
                    "new_type": issue.get("new_type"),
                })
        if actions:
            entries.append({
                "template_id": template["template_id"],
                "template_name": template.get("template_name"),
                "actions": actions,
            })

    return {
        "plan_id": str(uuid.uuid4()),
        "templates": entries,
        "renames": renames,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


# ============================================================================
# APPLICATION
# ============================================================================

def _token_regex(name: str) -> re.Pattern:
    return re.compile(r"\{\{\s*" + re.escape(name) + r"\s*\}\}")


def rewrite_tokens(text: str, actions: List[Dict[str, Any]]) -> str:
    for action in actions:
        if action["type"] == ACTION_RENAME:
            text = _token_regex(action["old_field"]).sub("{{" + action["new_field"] + "}}", text)
        elif action["type"] == ACTION_REMOVE:
            text = _token_regex(action["field_name"]).sub(removed_field_marker(action["field_name"]), text)
    return text


def apply_actions(template: Dict[str, Any], actions: List[Dict[str, Any]]) -> Tuple[Dict[str, Any], List[str]]:
    """Pure rewrite of markup, mappings and custom fields. Returns ($set fields, log lines)."""
    mappings = dict(template.get("field_mappings") or {})
    custom_fields = [dict(f) for f in template.get("custom_fields") or [] if isinstance(f, dict)]
    changes: List[str] = []

    for action in actions:
        if action["type"] == ACTION_RENAME:
            old_name, new_name = action["old_field"], action["new_field"]
            for placeholder, field_name in mappings.items():
                if field_name == old_name:
                    mappings[placeholder] = new_name
            for field in custom_fields:
                if field.get("name") == old_name:
                    field["name"] = new_name
            changes.append(f"Renamed {old_name} to {new_name}")
        elif action["type"] == ACTION_REMOVE:
            name = action["field_name"]
            mappings = {p: f for p, f in mappings.items() if f != name}
            custom_fields = [f for f in custom_fields if f.get("name") != name]
            changes.append(f"Removed field {name}")
        elif action["type"] == ACTION_NOTE_TYPE:
            changes.append(f"Field {action['field_name']} type changed from {action.get('old_type')} to {action.get('new_type')}")

    updates: Dict[str, Any] = {"field_mappings": mappings, "custom_fields": custom_fields}
    if template.get("html_content"):
        updates["html_content"] = rewrite_tokens(template["html_content"], actions)
    return updates, changes


async def backup_templates(template_ids: List[str], reason: str = "schema_migration") -> str:
    db = database.get_db()
    templates = await db.document_templates.find({"template_id": {"$in": template_ids}}, {"_id": 0}).to_list(None)
    backup_id = str(uuid.uuid4())
    await db.template_backups.insert_one({
        "backup_id": backup_id,
        "reason": reason,
        "templates": templates,
        "created_at": datetime.now(timezone.utc).isoformat(),
    })
    await create_audit_log(
        action=AuditAction.TEMPLATES_BACKED_UP,
        resource_type="template_backup",
        resource_id=backup_id,
        metadata={"template_ids": template_ids, "reason": reason},
    )
    logger.info(f"Backed up {len(templates)} template(s) as {backup_id}")
    return backup_id


async def _migrate_template(entry: Dict[str, Any], migrated_by: Optional[str]) -> Dict[str, Any]:
    db = database.get_db()
    template_id = entry["template_id"]
    template = await db.document_templates.find_one({"template_id": template_id}, {"_id": 0})
    if not template:
        raise NotFoundError(f"Template not found: {template_id}")

    actions = entry.get("actions") or []
    updates, changes = apply_actions(template, actions)

    rewrites_tokens = any(a["type"] in (ACTION_RENAME, ACTION_REMOVE) for a in actions)
    if template.get("docx_file_path") and rewrites_tokens:
        content, meta = await template_files_storage.download_file(template["docx_file_path"])
        rewritten = rewrite_docx_text(content, lambda text: rewrite_tokens(text, actions))
        await template_files_storage.upsert_file(
            template["docx_file_path"], rewritten, meta.content_type,
            metadata={**meta.metadata, "migrated_at": datetime.now(timezone.utc).isoformat()},
        )

    now = datetime.now(timezone.utc).isoformat()
    updates["updated_at"] = now
    await db.document_templates.update_one(
        {"template_id": template_id},
        {
            "$set": updates,
            "$push": {"migration_log": {"migrated_at": now, "migrated_by": migrated_by, "changes": changes}},
        },
    )
    await create_audit_log(
        action=AuditAction.TEMPLATE_MIGRATED,
        actor_id=migrated_by,
        resource_type="template",
        resource_id=template_id,
        metadata={"changes": changes},
    )
    return {"template_id": template_id, "template_name": template.get("name"), "changes": changes}


async def apply_migration(
    plan: Dict[str, Any],
    create_backup: bool = True,
    migrated_by: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Apply every template entry of a plan independently. One template failing
    does not stop the others. A failed backup is reported, not fatal.
    """
    entries = plan.get("templates") or []
    errors: List[str] = []
    backup_id = None

    if create_backup and entries:
        try:
            backup_id = await backup_templates([e["template_id"] for e in entries])
        except Exception as e:
            logger.warning(f"Template backup failed, continuing migration: {e}")
            errors.append(f"Backup failed: {e}")

    successful, failed = [], []
    for entry in entries:
        try:
            successful.append(await _migrate_template(entry, migrated_by))
        except Exception as e:
            logger.error(f"Migration failed for template {entry.get('template_id')}: {e}")
            failed.append({"template_id": entry.get("template_id"), "template_name": entry.get("template_name"), "error": str(e)})
            errors.append(f"{entry.get('template_name') or entry.get('template_id')}: {e}")
            await create_audit_log(
                action=AuditAction.TEMPLATE_MIGRATION_FAILED,
                actor_id=migrated_by,
                resource_type="template",
                resource_id=entry.get("template_id"),
                metadata={"error": str(e)},
            )

    logger.info(f"Migration applied: {len(successful)} succeeded, {len(failed)} failed")
    return {
        "success": not failed,
        "successful": successful,
        "failed": failed,
        "backup_id": backup_id,
        "errors": errors,
    }
