"""
Data model for the backup engine.

Two kinds of things live here:

- The table/column description of the live dataset. Storage uses it to build
  the SQLite schema, the serializer uses it to export rows in dependency order
  and to build the per-table row validators, and the wipe coordinator uses it
  to decide what is project-scoped.
- The transient per-operation structures (export options, reauthentication
  credential, import result, export artifact). None of them are persisted.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

TEXT = "text"
INTEGER = "integer"
BOOLEAN = "boolean"
TIMESTAMP = "timestamp"


@dataclass(frozen=True)
class Column:
    """One column of a dataset table."""

    name: str
    type: str = TEXT
    nullable: bool = False
    references: Optional[str] = None   # table whose `id` this column points at
    exported: bool = True           # False for server-local columns (2FA material)
    default: Any = None             # value used when an imported row omits the column
    unique: bool = False


@dataclass(frozen=True)
class Table:
    """One dataset table, with columns in declaration order."""

    name: str
    columns: Tuple[Column, ...]
    project_scoped: bool = False
    primary_key: Tuple[str, ...] = ("id",)

    @property
    def has_id(self) -> bool:
        return self.primary_key == ("id",)

    @property
    def exported_columns(self) -> Tuple[Column, ...]:
        return tuple(c for c in self.columns if c.exported)

    @property
    def references(self) -> Dict[str, str]:
        return {c.name: c.references for c in self.columns if c.references}


def _id() -> Column:
    return Column("id")


def _ts(name: str, nullable: bool = False) -> Column:
    return Column(name, TIMESTAMP, nullable=nullable)


def _ref(name: str, table: str, nullable: bool = False) -> Column:
    return Column(name, TEXT, nullable=nullable, references=table)


# Dependency order: every table only references tables that appear before it
# (tickets.parent_id is the one self reference). Inserting in this order and
# deleting in reverse never trips a foreign key.
TABLES: Tuple[Table, ...] = (
    Table("system_settings", (
        _id(),
        Column("app_name"),
        Column("max_attachment_size_mb", INTEGER),
        Column("max_attachments_per_ticket", INTEGER),
        Column("email_enabled", BOOLEAN),
        Column("default_role_permissions", nullable=True),
        _ts("updated_at"),
        Column("updated_by", nullable=True),
    )),
    Table("users", (
        _id(),
        Column("username", unique=True),
        Column("email", nullable=True),
        Column("name"),
        Column("avatar", nullable=True),
        Column("password_hash", nullable=True),
        Column("is_system_admin", BOOLEAN),
        Column("is_active", BOOLEAN),
        _ts("created_at"),
        _ts("updated_at"),
        _ts("last_login_at", nullable=True),
        Column("totp_secret", nullable=True, exported=False),
        Column("totp_enabled", BOOLEAN, exported=False, default=False),
        Column("totp_recovery_codes", nullable=True, exported=False),
    )),
    Table("projects", (
        _id(),
        Column("name"),
        Column("key"),
        Column("description", nullable=True),
        Column("color"),
        _ts("created_at"),
        _ts("updated_at"),
    ), project_scoped=True),
    Table("roles", (
        _id(),
        _ref("project_id", "projects"),
        Column("name"),
        Column("color"),
        Column("permissions"),
        Column("is_default", BOOLEAN),
        Column("position", INTEGER),
        _ts("created_at"),
        _ts("updated_at"),
    ), project_scoped=True),
    Table("columns", (
        _id(),
        _ref("project_id", "projects"),
        Column("name"),
        Column("position", INTEGER),
    ), project_scoped=True),
    Table("labels", (
        _id(),
        _ref("project_id", "projects"),
        Column("name"),
        Column("color"),
    ), project_scoped=True),
    Table("sprints", (
        _id(),
        _ref("project_id", "projects"),
        Column("name"),
        Column("goal", nullable=True),
        Column("status"),
        _ts("start_date", nullable=True),
        _ts("end_date", nullable=True),
        _ts("completed_at", nullable=True),
        _ref("completed_by_id", "users", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    ), project_scoped=True),
    Table("project_members", (
        _id(),
        _ref("project_id", "projects"),
        _ref("user_id", "users"),
        _ref("role_id", "roles"),
        Column("overrides", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    ), project_scoped=True),
    Table("project_sprint_settings", (
        _id(),
        _ref("project_id", "projects"),
        Column("default_sprint_duration", INTEGER),
        Column("auto_carry_over_incomplete", BOOLEAN),
        Column("done_column_ids"),
        _ts("created_at"),
        _ts("updated_at"),
    ), project_scoped=True),
    Table("tickets", (
        _id(),
        _ref("project_id", "projects"),
        _ref("column_id", "columns"),
        Column("number", INTEGER),
        Column("title"),
        Column("description", nullable=True),
        Column("type"),
        Column("priority"),
        Column("position", INTEGER),
        Column("story_points", INTEGER, nullable=True),
        _ts("due_date", nullable=True),
        _ref("assignee_id", "users", nullable=True),
        _ref("creator_id", "users", nullable=True),
        _ref("sprint_id", "sprints", nullable=True),
        _ref("parent_id", "tickets", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
    ), project_scoped=True),
    Table("ticket_labels", (
        _ref("ticket_id", "tickets"),
        _ref("label_id", "labels"),
    ), project_scoped=True, primary_key=("ticket_id", "label_id")),
    Table("ticket_links", (
        _id(),
        _ref("from_ticket_id", "tickets"),
        _ref("to_ticket_id", "tickets"),
        Column("link_type"),
        _ts("created_at"),
    ), project_scoped=True),
    Table("ticket_watchers", (
        _id(),
        _ref("ticket_id", "tickets"),
        _ref("user_id", "users"),
        _ts("created_at"),
    ), project_scoped=True),
    Table("comments", (
        _id(),
        _ref("ticket_id", "tickets"),
        _ref("author_id", "users"),
        Column("content"),
        _ts("created_at"),
        _ts("updated_at"),
    ), project_scoped=True),
    Table("ticket_edits", (
        _id(),
        _ref("ticket_id", "tickets"),
        _ref("user_id", "users"),
        Column("field"),
        Column("old_value", nullable=True),
        Column("new_value", nullable=True),
        _ts("created_at"),
    ), project_scoped=True),
    Table("attachments", (
        _id(),
        _ref("ticket_id", "tickets"),
        _ref("uploader_id", "users", nullable=True),
        Column("filename"),
        Column("mime_type"),
        Column("size", INTEGER),
        _ts("created_at"),
    ), project_scoped=True),
    Table("ticket_sprint_history", (
        _id(),
        _ref("ticket_id", "tickets"),
        _ref("sprint_id", "sprints"),
        Column("entry_type"),
        Column("exit_status", nullable=True),
        _ts("added_at"),
        _ts("removed_at", nullable=True),
    ), project_scoped=True),
    Table("invitations", (
        _id(),
        _ref("project_id", "projects"),
        _ref("sender_id", "users", nullable=True),
        Column("email"),
        Column("role"),
        Column("token"),
        Column("status"),
        _ts("expires_at"),
        _ts("created_at"),
    ), project_scoped=True),
)

TABLES_BY_NAME: Dict[str, Table] = {t.name: t for t in TABLES}
TABLE_NAMES: Tuple[str, ...] = tuple(t.name for t in TABLES)
PROJECT_TABLES: Tuple[Table, ...] = tuple(t for t in TABLES if t.project_scoped)

# Entity kinds that carry a binary file in the durable store
ATTACHMENTS = "attachments"
AVATARS = "avatars"


# ──────────────────────────────────────────────────────────────────────────────
# Per-operation structures
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class ExportOptions:
    """What to put in an export artifact."""

    password: Optional[str] = None
    include_attachments: bool = False
    include_avatars: bool = False

    @property
    def will_be_zip(self) -> bool:
        return self.include_attachments or self.include_avatars

    def to_dict(self) -> Dict[str, bool]:
        """Options as recorded inside the artifact (never the password)."""
        return {
            "includeAttachments": self.include_attachments,
            "includeAvatars": self.include_avatars,
        }


@dataclass
class ReauthCredential:
    """Credential re-entered before a sensitive action. Never stored."""

    password: str
    totp_code: Optional[str] = None
    is_recovery_code: bool = False


@dataclass
class FileRestoreSummary:
    """Reconciliation of referenced files against what the archive held."""

    attachments_restored: int = 0
    avatars_restored: int = 0
    attachments_missing: int = 0
    avatars_missing: int = 0
    missing_files: List[str] = field(default_factory=list)

    def record(self, entity_type: str, restored: bool, relative_path: str) -> None:
        if entity_type == ATTACHMENTS:
            if restored:
                self.attachments_restored += 1
            else:
                self.attachments_missing += 1
        else:
            if restored:
                self.avatars_restored += 1
            else:
                self.avatars_missing += 1
        if not restored:
            self.missing_files.append(relative_path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attachmentsRestored": self.attachments_restored,
            "avatarsRestored": self.avatars_restored,
            "attachmentsMissing": self.attachments_missing,
            "avatarsMissing": self.avatars_missing,
            "missingFiles": list(self.missing_files),
        }


@dataclass
class ImportResult:
    """Outcome of a successful import. Only ever built once the restore committed."""

    counts: Dict[str, int]
    files: FileRestoreSummary

    def to_dict(self) -> Dict[str, Any]:
        return {"counts": dict(self.counts), "files": self.files.to_dict()}


@dataclass
class ExportArtifact:
    """Bytes handed back to the caller of an export."""

    filename: str
    content_type: str
    content: bytes
    is_archive: bool
    encrypted: bool
