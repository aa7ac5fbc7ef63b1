"""
Field Resolution - builds the flat key → value map a template is rendered with.

Sources, lowest to highest precedence:
1. Client record attributes (plus client_ prefixed aliases)
2. Derived values (full_name, full_address) and computed values (current_date, ...)
3. Custom field values captured on the task
4. Template field_mappings (placeholder → field name) resolved against the above

Field definitions may be addressed by name or by label. Both are normalized to a
single canonical key (FieldKey) when values enter the system, so nothing
downstream needs a second lookup path.
"""
import re
import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ADDRESS_PARTS = ["address_line_1", "address_line_2", "city", "state", "postal_code", "country"]

# Client attributes never exposed to templates
INTERNAL_CLIENT_KEYS = {"_id", "task_completions"}

FIELD_TYPE_TEXT = "text"
FIELD_TYPE_EMAIL = "email"
FIELD_TYPE_NUMBER = "number"
FIELD_TYPE_DATE = "date"
FIELD_TYPE_BOOLEAN = "boolean"

DATE_TYPES = {"date", "timestamp", "datetime"}
NUMBER_TYPES = {"number", "numeric", "integer", "decimal"}


def canonical_field_name(raw: str) -> str:
    """'Spouse Name' / 'spouse-name' / 'SpouseName ' → 'spouse_name'."""
    text = str(raw or "").strip()
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", text)
    text = re.sub(r"[^a-zA-Z0-9]+", "_", text)
    return text.strip("_").lower()


@dataclass(frozen=True)
class FieldKey:
    """Canonical identity of a field definition."""
    name: str
    label: str

    @classmethod
    def from_definition(cls, field: Dict[str, Any]) -> "FieldKey":
        raw_name = field.get("name") or field.get("label") or ""
        name = canonical_field_name(raw_name)
        label = field.get("label") or generate_field_label(name)
        return cls(name=name, label=label)

    def matches(self, key: str) -> bool:
        candidate = canonical_field_name(key)
        return candidate == self.name or candidate == canonical_field_name(self.label)


def generate_field_label(name: str) -> str:
    return " ".join(part.capitalize() for part in str(name).split("_") if part)


def normalize_field_definitions(fields: Optional[Iterable[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Return copies of the definitions carrying their canonical name and label."""
    normalized = []
    for field in fields or []:
        if not isinstance(field, dict):
            continue
        key = FieldKey.from_definition(field)
        if not key.name:
            continue
        normalized.append({
            **field,
            "name": key.name,
            "original_name": field.get("name") or key.name,
            "label": key.label,
            "type": (field.get("type") or FIELD_TYPE_TEXT).lower(),
            "required": bool(field.get("required", False)),
        })
    return normalized


def normalize_field_values(
    values: Optional[Dict[str, Any]],
    fields: Optional[Iterable[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    Re-key a value map onto canonical field names.

    A key matching a known definition by name or label takes that definition's
    name; any other key is canonicalized on its own.
    """
    keys = [FieldKey.from_definition(f) for f in (fields or []) if isinstance(f, dict)]
    result: Dict[str, Any] = {}
    for raw_key, value in (values or {}).items():
        target = None
        for key in keys:
            if key.matches(raw_key):
                target = key.name
                break
        result[target or canonical_field_name(raw_key)] = value
    return result


# ============================================================================
# VALUE FORMATTING
# ============================================================================

def format_date(value: Any) -> str:
    """Format as 'Month D, YYYY'. Unparseable strings are returned unchanged."""
    parsed = parse_date(value)
    if parsed is None:
        return str(value)
    return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year}"


def parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in ("%B %d, %Y", "%m/%d/%Y", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def format_value(value: Any, field_type: Optional[str] = None) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (datetime, date)):
        return format_date(value)
    if field_type and field_type.lower() in DATE_TYPES:
        return format_date(value) if str(value).strip() else ""
    if field_type and field_type.lower() == FIELD_TYPE_BOOLEAN and isinstance(value, str):
        return "Yes" if value.strip().lower() in ("true", "yes", "1") else "No"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def build_full_name(client: Dict[str, Any]) -> str:
    return f"{client.get('first_name') or ''} {client.get('last_name') or ''}".strip()


def build_full_address(client: Dict[str, Any]) -> str:
    return ", ".join(str(client[part]) for part in ADDRESS_PARTS if client.get(part))


# ============================================================================
# RENDER DATA
# ============================================================================

def build_render_data(
    client: Optional[Dict[str, Any]],
    custom_fields: Optional[Iterable[Dict[str, Any]]] = None,
    custom_field_values: Optional[Dict[str, Any]] = None,
    field_mappings: Optional[Dict[str, str]] = None,
    now: Optional[datetime] = None,
    field_types: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """
    Assemble the flat string map for one template.

    field_types maps client attribute names to schema types so stored ISO
    dates render as 'Month D, YYYY'.
    """
    client = client or {}
    field_types = field_types or {}
    now = now or datetime.now(timezone.utc)
    data: Dict[str, str] = {}

    for key, value in client.items():
        if key in INTERNAL_CLIENT_KEYS:
            continue
        formatted = format_value(value, field_types.get(key))
        data[key] = formatted
        if not key.startswith("client_"):
            data[f"client_{key}"] = formatted

    full_name = (data.get("full_name") or "").strip() or build_full_name(client)
    data["full_name"] = full_name
    data.setdefault("client_full_name", full_name)
    data.setdefault("client_name", full_name)

    full_address = build_full_address(client)
    data["full_address"] = full_address
    data.setdefault("client_address", full_address)
    data.setdefault("address", full_address)

    data["current_date"] = format_date(now)
    data["today"] = data["current_date"]
    data["current_datetime"] = f"{data['current_date']} at {now.strftime('%I:%M %p')}"
    data["current_year"] = str(now.year)
    data["year"] = data["current_year"]

    definitions = normalize_field_definitions(custom_fields)
    types_by_name = {f["name"]: f["type"] for f in definitions}
    for key, value in normalize_field_values(custom_field_values, definitions).items():
        data[key] = format_value(value, types_by_name.get(key))
    # Templates written against the declared spelling keep resolving
    for field in definitions:
        if field["original_name"] != field["name"] and field["name"] in data:
            data.setdefault(field["original_name"], data[field["name"]])

    for placeholder, field_name in (field_mappings or {}).items():
        if not placeholder or not field_name:
            continue
        source = canonical_field_name(field_name)
        if field_name in data:
            data[placeholder] = data[field_name]
        elif source in data:
            data[placeholder] = data[source]

    return data


# ============================================================================
# VALIDATION
# ============================================================================

def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, dict)) and not value:
        return True
    return False


def validate_field_values(
    fields: Optional[Iterable[Dict[str, Any]]],
    values: Optional[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Check every field definition against the supplied values.

    Every issue is collected; nothing short-circuits. Type checks apply to any
    non-blank value whether or not the field is required.
    """
    definitions = normalize_field_definitions(fields)
    normalized = normalize_field_values(values, definitions)
    issues: List[Dict[str, Any]] = []

    for field in definitions:
        name = field["name"]
        label = field["label"]
        value = normalized.get(name)

        if is_blank(value):
            if field["required"]:
                issues.append({
                    "field": name,
                    "label": label,
                    "rule": "required",
                    "message": f"{label} is required",
                })
            continue

        field_type = field["type"]
        if field_type == FIELD_TYPE_EMAIL and not EMAIL_PATTERN.match(str(value).strip()):
            issues.append({
                "field": name,
                "label": label,
                "rule": "email",
                "message": f"{label} must be a valid email address",
            })
        elif field_type in NUMBER_TYPES and not _is_number(value):
            issues.append({
                "field": name,
                "label": label,
                "rule": "number",
                "message": f"{label} must be a number",
            })
        elif field_type in DATE_TYPES and parse_date(value) is None:
            issues.append({
                "field": name,
                "label": label,
                "rule": "date",
                "message": f"{label} must be a valid date",
            })

    return issues


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value).strip().replace(",", ""))
        return True
    except ValueError:
        return False


# ============================================================================
# CROSS-TEMPLATE FIELDS
# ============================================================================

def aggregate_custom_fields(templates: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Union of the templates' custom fields, de-duplicated by canonical name."""
    by_name: Dict[str, Dict[str, Any]] = {}
    for template in templates:
        for field in normalize_field_definitions(template.get("custom_fields")):
            source = {"template_id": template.get("template_id"), "name": template.get("name")}
            if field["name"] not in by_name:
                by_name[field["name"]] = {**field, "source_templates": [source]}
            else:
                by_name[field["name"]]["source_templates"].append(source)
    return list(by_name.values())


def detect_field_conflicts(templates: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Report fields declared by more than one template with differing
    type or required flag. Conflicts are warnings, never errors.
    """
    definitions: Dict[str, List[Dict[str, Any]]] = {}
    for template in templates:
        for field in normalize_field_definitions(template.get("custom_fields")):
            definitions.setdefault(field["name"], []).append({
                "template_id": template.get("template_id"),
                "template_name": template.get("name"),
                "type": field["type"],
                "required": field["required"],
                "label": field["label"],
            })

    conflicts = []
    for name, defs in definitions.items():
        if len(defs) < 2:
            continue
        first = defs[0]
        if any(
            d["type"] != first["type"] or d["required"] != first["required"]
            for d in defs[1:]
        ):
            conflicts.append({"field_name": name, "definitions": defs})
    if conflicts:
        logger.warning(f"Field conflicts across templates: {[c['field_name'] for c in conflicts]}")
    return conflicts


def describe_conflict(conflict: Dict[str, Any]) -> str:
    templates = ", ".join(str(d.get("template_name") or d.get("template_id")) for d in conflict["definitions"])
    return f"Field '{conflict['field_name']}' is defined differently across templates: {templates}"
