"""
Backup serializer: live dataset <-> versioned JSON document.

serialize() reads every table inside one snapshot and writes the rows in
dependency order. validate() is the whole of import-side checking and runs
before anything touches the live dataset: schema version, the shape of every
row (one strict pydantic model per table), duplicate keys, and every reference
resolving to a row elsewhere in the same document.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, ConfigDict, Field, StrictBool, StrictInt, StrictStr, create_model
from pydantic import ValidationError as RowValidationError

from ticketvault import config
from ticketvault.bundle import FileManifestEntry, is_safe_segment
from ticketvault.errors import ValidationError
from ticketvault.models import (
    ATTACHMENTS,
    AVATARS,
    BOOLEAN,
    INTEGER,
    TABLES,
    TABLES_BY_NAME,
    TEXT,
    TIMESTAMP,
    ExportOptions,
    Table,
)
from ticketvault.storage import Dataset, get_dataset

logger = logging.getLogger(__name__)


def _check_timestamp(value: str) -> str:
    datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value


Timestamp = Annotated[StrictStr, AfterValidator(_check_timestamp)]

# SQLite stores INTEGER as a signed 64-bit value
SqliteInt = Annotated[StrictInt, Field(ge=-2**63, le=2**63 - 1)]

_FIELD_TYPES = {
    TEXT: StrictStr,
    INTEGER: SqliteInt,
    BOOLEAN: StrictBool,
    TIMESTAMP: Timestamp,
}


def _row_model(table: Table):
    fields: Dict[str, Any] = {}
    for column in table.exported_columns:
        python_type = _FIELD_TYPES[column.type]
        if column.nullable:
            fields[column.name] = (Optional[python_type], None)
        else:
            fields[column.name] = (python_type, ...)
    model_name = "".join(part.title() for part in table.name.split("_")) + "Row"
    return create_model(model_name, __config__=ConfigDict(extra="ignore"), **fields)


# One validator per table, built once from the schema description
ROW_MODELS = {table.name: _row_model(table) for table in TABLES}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def file_references(rows: Dict[str, List[Dict[str, Any]]], options: ExportOptions) -> List[FileManifestEntry]:
    """Files the rows point at, limited to the kinds the options include."""
    references = []
    if options.include_attachments:
        references += [FileManifestEntry.for_entity(ATTACHMENTS, r["id"]) for r in rows.get("attachments", [])]
    if options.include_avatars:
        references += [
            FileManifestEntry.for_entity(AVATARS, r["id"]) for r in rows.get("users", []) if r.get("avatar")
        ]
    return references


# ══════════════════════════════════════════════════════════════════════════════
# Export
# ══════════════════════════════════════════════════════════════════════════════

def serialize(options: ExportOptions, exported_by: str, dataset: Optional[Dataset] = None) -> Dict[str, Any]:
    """Read the live dataset into a backup document (a plain dict)."""
    dataset = dataset or get_dataset()
    with dataset.snapshot() as conn:
        entities = {
            table.name: Dataset.fetch_all(conn, table.name, [c.name for c in table.exported_columns])
            for table in TABLES
        }

    return {
        "schemaVersion": config.SCHEMA_VERSION,
        "encrypted": False,
        "exportedAt": _now(),
        "exportedBy": exported_by,
        "options": options.to_dict(),
        "counts": {name: len(rows) for name, rows in entities.items()},
        "entities": entities,
    }


def to_bytes(document: Dict[str, Any]) -> bytes:
    return json.dumps(document, indent=2).encode("utf-8")


# ══════════════════════════════════════════════════════════════════════════════
# Import-side validation
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class ValidatedDocument:
    """A document that passed every check and can be applied as-is."""

    schema_version: int
    exported_at: Optional[str]
    exported_by: Optional[str]
    options: ExportOptions
    rows: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)

    @property
    def counts(self) -> Dict[str, int]:
        return {table.name: len(self.rows.get(table.name, [])) for table in TABLES}

    def file_references(self) -> List[FileManifestEntry]:
        return file_references(self.rows, self.options)


def _describe(error: RowValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"]) or "row"
    return f"{location}: {first['msg']}"


def _check_rows(table: Table, raw_rows: Any) -> List[Dict[str, Any]]:
    if not isinstance(raw_rows, list):
        raise ValidationError(f"entities.{table.name} must be an array")

    model = ROW_MODELS[table.name]
    rows = []
    for index, raw in enumerate(raw_rows):
        if not isinstance(raw, dict):
            raise ValidationError(f"{table.name}[{index}] must be an object")
        try:
            rows.append(model.model_validate(raw).model_dump())
        except RowValidationError as e:
            raise ValidationError(f"{table.name}[{index}] is invalid ({_describe(e)})") from None
    return rows


def _check_unique(table: Table, rows: List[Dict[str, Any]]):
    keys = [tuple(row[c] for c in table.primary_key) for row in rows]
    if len(set(keys)) != len(keys):
        raise ValidationError(f"{table.name} contains duplicate keys")
    for column in table.exported_columns:
        if column.unique:
            values = [row[column.name] for row in rows if row[column.name] is not None]
            if len(set(values)) != len(values):
                raise ValidationError(f"{table.name}.{column.name} contains duplicate values")


def _check_file_keys(rows: Dict[str, List[Dict[str, Any]]]):
    # Attachment and user ids double as file-store keys
    for table_name in (ATTACHMENTS, "users"):
        for index, row in enumerate(rows[table_name]):
            if not is_safe_segment(row["id"]):
                raise ValidationError(f"{table_name}[{index}].id {row['id']!r} is not a valid file name")


def _check_references(rows: Dict[str, List[Dict[str, Any]]]):
    ids = {
        table.name: {row["id"] for row in rows[table.name]}
        for table in TABLES
        if table.has_id
    }
    for table in TABLES:
        for index, row in enumerate(rows[table.name]):
            for column, target in table.references.items():
                value = row[column]
                if value is not None and value not in ids[target]:
                    raise ValidationError(
                        f"{table.name}[{index}].{column} references missing {target} {value!r}"
                    )


def validate(document: Any) -> ValidatedDocument:
    """Check a parsed document end to end. Nothing here touches the live dataset."""
    if not isinstance(document, dict):
        raise ValidationError("Invalid export file structure")

    schema_version = document.get("schemaVersion")
    if (
        not isinstance(schema_version, int)
        or isinstance(schema_version, bool)
        or schema_version not in config.COMPATIBLE_SCHEMA_VERSIONS
    ):
        raise ValidationError(
            f"Unsupported backup schema version {schema_version!r} "
            f"(this server reads {', '.join(map(str, config.COMPATIBLE_SCHEMA_VERSIONS))})"
        )

    entities = document.get("entities")
    if not isinstance(entities, dict):
        raise ValidationError("Invalid export file structure: missing entities")
    unknown = set(entities) - set(TABLES_BY_NAME)
    if unknown:
        raise ValidationError(f"Unknown entity types: {', '.join(sorted(unknown))}")

    rows = {}
    for table in TABLES:
        rows[table.name] = _check_rows(table, entities.get(table.name, []))
        _check_unique(table, rows[table.name])

    if len(rows["system_settings"]) > 1:
        raise ValidationError("system_settings may hold at most one row")

    _check_references(rows)
    _check_file_keys(rows)

    if not any(u["is_system_admin"] and u["is_active"] for u in rows["users"]):
        raise ValidationError("Backup contains no active system administrator")

    raw_options = document.get("options")
    raw_options = raw_options if isinstance(raw_options, dict) else {}
    options = ExportOptions(
        include_attachments=raw_options.get("includeAttachments") is True,
        include_avatars=raw_options.get("includeAvatars") is True,
    )

    exported_at = document.get("exportedAt")
    exported_by = document.get("exportedBy")
    validated = ValidatedDocument(
        schema_version=schema_version,
        exported_at=exported_at if isinstance(exported_at, str) else None,
        exported_by=exported_by if isinstance(exported_by, str) else None,
        options=options,
        rows=rows,
    )
    logger.debug("Backup document validated: %s", validated.counts)
    return validated


def parse(data: bytes) -> ValidatedDocument:
    """Decode plaintext document bytes and validate them."""
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ValidationError("Invalid JSON format") from None
    return validate(document)
