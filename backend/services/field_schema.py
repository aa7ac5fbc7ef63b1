"""
Field Schema Registry - the client data fields templates can bind to.

The live schema comes from CLIENT_SCHEMA_CONFIG (a JSON list of
{name, type, nullable}) or falls back to the built-in client field list.
Snapshots of a schema are stored so two points in time can be compared by the
schema migration analyzer.
"""
import os
import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional

from pydantic import BaseModel, Field, ConfigDict

from database import database
from services.field_resolution import canonical_field_name, generate_field_label

logger = logging.getLogger(__name__)


# ============================================================================
# FIELD MODEL
# ============================================================================

class SchemaField(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    type: str = "string"
    nullable: bool = True
    label: Optional[str] = None
    category: Optional[str] = None


DEFAULT_CLIENT_FIELDS: List[Dict[str, Any]] = [
    # Personal
    {"name": "first_name", "type": "string", "nullable": False},
    {"name": "last_name", "type": "string", "nullable": False},
    {"name": "middle_name", "type": "string", "nullable": True},
    {"name": "date_of_birth", "type": "date", "nullable": True},
    {"name": "gender", "type": "string", "nullable": True},
    {"name": "title", "type": "string", "nullable": True},
    # Contact
    {"name": "email", "type": "email", "nullable": True},
    {"name": "phone", "type": "string", "nullable": True},
    {"name": "mobile", "type": "string", "nullable": True},
    {"name": "address_line_1", "type": "string", "nullable": True},
    {"name": "address_line_2", "type": "string", "nullable": True},
    {"name": "city", "type": "string", "nullable": True},
    {"name": "state", "type": "string", "nullable": True},
    {"name": "postal_code", "type": "string", "nullable": True},
    {"name": "country", "type": "string", "nullable": True},
    # Professional
    {"name": "occupation", "type": "string", "nullable": True},
    {"name": "company", "type": "string", "nullable": True},
    {"name": "job_title", "type": "string", "nullable": True},
    {"name": "work_email", "type": "email", "nullable": True},
    {"name": "work_phone", "type": "string", "nullable": True},
    # System
    {"name": "status", "type": "string", "nullable": False},
    {"name": "client_type", "type": "string", "nullable": False},
    {"name": "notes", "type": "text", "nullable": True},
]

# Values derived at render time; always available to templates
COMPUTED_FIELDS: List[Dict[str, Any]] = [
    {"name": "full_name", "type": "string", "nullable": True},
    {"name": "full_address", "type": "string", "nullable": True},
    {"name": "current_date", "type": "date", "nullable": False},
    {"name": "current_year", "type": "string", "nullable": False},
    {"name": "current_datetime", "type": "datetime", "nullable": False},
]

FIELD_CATEGORIES = {
    "personal": ["first_name", "last_name", "full_name", "middle_name", "date_of_birth", "gender", "title", "age"],
    "contact": ["email", "phone", "mobile", "address_line_1", "address_line_2", "city", "state",
                "postal_code", "country", "full_address", "zip", "zipcode"],
    "professional": ["occupation", "company", "job_title", "department", "work_phone", "work_email",
                     "employer", "position"],
    "financial": ["income", "net_worth", "account_number", "bank_name", "tax_id", "salary", "assets"],
    "legal": ["citizenship", "passport_number", "drivers_license", "legal_status", "id_number"],
    "relationship": ["spouse_name", "emergency_contact", "referral_source", "next_of_kin"],
    "system": ["status", "client_type", "created_at", "updated_at", "current_date", "current_year",
               "current_datetime"],
}


def categorize_field(name: str) -> str:
    lowered = name.lower()
    for category, names in FIELD_CATEGORIES.items():
        if lowered in names:
            return category
    for category, names in FIELD_CATEGORIES.items():
        if any(known in lowered for known in names):
            return category
    if lowered.startswith("custom_") or lowered.startswith("ext_"):
        return "custom"
    return "other"


def _enrich(field: Dict[str, Any]) -> Dict[str, Any]:
    name = canonical_field_name(field.get("name", ""))
    return SchemaField(
        **{
            **field,
            "name": name,
            "label": field.get("label") or generate_field_label(name),
            "category": field.get("category") or categorize_field(name),
        }
    ).model_dump()


def get_configured_fields() -> List[Dict[str, Any]]:
    raw = os.getenv("CLIENT_SCHEMA_CONFIG")
    if raw:
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, list) and parsed:
                return [f for f in parsed if isinstance(f, dict) and f.get("name")]
            logger.warning("CLIENT_SCHEMA_CONFIG is not a non-empty list, using default client schema")
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse CLIENT_SCHEMA_CONFIG: {e}")
    return DEFAULT_CLIENT_FIELDS


def get_client_field_schema(include_computed: bool = True) -> List[Dict[str, Any]]:
    """Client fields with label and category, optionally followed by computed fields."""
    fields = [_enrich(f) for f in get_configured_fields()]
    if include_computed:
        known = {f["name"] for f in fields}
        fields.extend(_enrich(f) for f in COMPUTED_FIELDS if f["name"] not in known)
    return fields


def get_client_field_types() -> Dict[str, str]:
    return {f["name"]: f["type"] for f in get_client_field_schema(include_computed=False)}


# ============================================================================
# SNAPSHOTS
# ============================================================================

async def save_schema_snapshot(fields: Optional[List[Dict[str, Any]]] = None, source: str = "manual") -> Dict[str, Any]:
    """Persist a schema snapshot. Defaults to the current client schema."""
    db = database.get_db()
    snapshot = {
        "snapshot_id": str(uuid.uuid4()),
        "fields": [_enrich(f) for f in fields] if fields is not None else get_client_field_schema(include_computed=False),
        "source": source,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    await db.field_schema_snapshots.insert_one(snapshot)
    snapshot.pop("_id", None)
    logger.info(f"Schema snapshot saved: {snapshot['snapshot_id']} ({len(snapshot['fields'])} fields, source={source})")
    return snapshot


async def get_schema_snapshot(snapshot_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.field_schema_snapshots.find_one({"snapshot_id": snapshot_id}, {"_id": 0})


async def get_latest_schema_snapshot() -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.field_schema_snapshots.find_one({}, {"_id": 0}, sort=[("created_at", -1)])
