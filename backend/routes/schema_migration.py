"""
Schema API Routes - client field schema, snapshots and template migration.

Typical flow:
1. POST /snapshots before and after a schema change
2. POST /analyze with both snapshots (or raw field lists)
3. POST /affected-templates with the change set
4. POST /migration-plan with the caller's rename choices
5. POST /apply-migration
"""
import logging
from typing import Optional, Dict, Any, List

from fastapi import APIRouter
from pydantic import BaseModel, Field

from services.errors import NotFoundError, ValidationError
from services.field_schema import (
    get_client_field_schema,
    get_latest_schema_snapshot,
    get_schema_snapshot,
    save_schema_snapshot,
)
from services.schema_migration import (
    analyze_schema_change,
    apply_migration,
    find_affected_templates,
    generate_migration_plan,
    unambiguous_renames,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/schema", tags=["schema-migration"])


# ============================================================================
# REQUEST MODELS
# ============================================================================

class SnapshotRequest(BaseModel):
    fields: Optional[List[Dict[str, Any]]] = Field(None, description="Fields to snapshot; defaults to the live client schema")
    source: str = Field("manual", description="Where the snapshot came from")


class AnalyzeRequest(BaseModel):
    old_snapshot_id: Optional[str] = None
    new_snapshot_id: Optional[str] = None
    old_fields: Optional[List[Dict[str, Any]]] = None
    new_fields: Optional[List[Dict[str, Any]]] = None


class AffectedTemplatesRequest(BaseModel):
    change_set: Dict[str, Any] = Field(..., description="Output of /analyze")


class MigrationPlanRequest(BaseModel):
    change_set: Dict[str, Any] = Field(..., description="Output of /analyze")
    affected_templates: Optional[List[Dict[str, Any]]] = Field(None, description="Output of /affected-templates; recomputed when omitted")
    renames: Dict[str, str] = Field(default_factory=dict, description="Accepted renames, old field → new field")


class ApplyMigrationRequest(BaseModel):
    plan: Dict[str, Any] = Field(..., description="Output of /migration-plan")
    create_backup: bool = True
    migrated_by: Optional[str] = None


async def _resolve_fields(snapshot_id: Optional[str], fields: Optional[List[Dict[str, Any]]], which: str) -> List[Dict[str, Any]]:
    if fields is not None:
        return fields
    if snapshot_id:
        snapshot = await get_schema_snapshot(snapshot_id)
        if not snapshot:
            raise NotFoundError(f"Schema snapshot not found: {snapshot_id}")
        return snapshot["fields"]
    if which == "new":
        return get_client_field_schema(include_computed=False)
    latest = await get_latest_schema_snapshot()
    if not latest:
        raise ValidationError("No schema snapshot stored; provide old_snapshot_id or old_fields")
    return latest["fields"]


# ============================================================================
# ENDPOINTS
# ============================================================================

@router.get("/fields")
async def get_fields(include_computed: bool = True):
    fields = get_client_field_schema(include_computed=include_computed)
    return {"fields": fields, "count": len(fields)}


@router.post("/snapshots")
async def create_snapshot(request: SnapshotRequest):
    return await save_schema_snapshot(request.fields, request.source)


@router.post("/analyze")
async def analyze(request: AnalyzeRequest):
    """Diff two schemas. Old defaults to the latest snapshot, new to the live client schema."""
    old_fields = await _resolve_fields(request.old_snapshot_id, request.old_fields, "old")
    new_fields = await _resolve_fields(request.new_snapshot_id, request.new_fields, "new")
    change_set = analyze_schema_change(old_fields, new_fields)
    change_set["suggested_renames"] = unambiguous_renames(change_set)
    return change_set


@router.post("/affected-templates")
async def affected_templates(request: AffectedTemplatesRequest):
    affected = await find_affected_templates(request.change_set)
    return {"affected_templates": affected, "count": len(affected)}


@router.post("/migration-plan")
async def migration_plan(request: MigrationPlanRequest):
    affected = request.affected_templates
    if affected is None:
        affected = await find_affected_templates(request.change_set)
    return generate_migration_plan(affected, request.change_set, {"renames": request.renames})


@router.post("/apply-migration")
async def apply(request: ApplyMigrationRequest):
    return await apply_migration(request.plan, create_backup=request.create_backup, migrated_by=request.migrated_by)
