"""
pytest configuration and fixtures.

Every test runs against its own temporary data directory (database, file
store, key file, audit log) with cheap Argon2 costs so key derivation and
password hashing stay fast.
"""

import pyotp
import pytest
from fastapi.testclient import TestClient

from ticketvault import config, filestore
from ticketvault.api import app
from ticketvault.auth import SESSIONS, create_user, enable_mfa, login_user, setup_mfa
from ticketvault.models import ReauthCredential
from ticketvault.security import security_manager
from ticketvault.storage import Dataset, get_dataset

ADMIN_PASSWORD = "AdminPassw0rd!"
USER_PASSWORD = "UserPassw0rd!!"
TS = "2026-01-05T10:00:00+00:00"

ATTACHMENT_BYTES = b"%PDF-1.4 attachment bytes"
AVATAR_BYTES = b"\x89PNG avatar bytes"


@pytest.fixture(autouse=True)
def temp_storage(monkeypatch, tmp_path):
    """Point every path in config at a fresh temp directory and lower KDF costs."""
    data_dir = tmp_path / "data"
    monkeypatch.setattr(config, "DATA_DIR", data_dir)
    monkeypatch.setattr(config, "DB_PATH", data_dir / "ticketvault.db")
    monkeypatch.setattr(config, "FILES_DIR", data_dir / "files")
    monkeypatch.setattr(config, "KEY_FILE", data_dir / "secret.key")
    monkeypatch.setattr(config, "AUDIT_LOG", data_dir / "audit_log.json")

    monkeypatch.setattr(config, "KDF_TIME_COST", 1)
    monkeypatch.setattr(config, "KDF_MEMORY_COST", 1024)
    monkeypatch.setattr(config, "KDF_PARALLELISM", 1)
    monkeypatch.setattr(config, "PASSWORD_TIME_COST", 1)
    monkeypatch.setattr(config, "PASSWORD_MEMORY_COST", 1024)
    monkeypatch.setattr(config, "PASSWORD_PARALLELISM", 1)

    return {"data_dir": data_dir}


@pytest.fixture(autouse=True)
def clear_sessions():
    """Clear sessions and rate-limit state before and after each test."""
    SESSIONS.clear()
    security_manager.reset()
    yield
    SESSIONS.clear()
    security_manager.reset()


@pytest.fixture
def client():
    """FastAPI test client for API integration tests."""
    return TestClient(app)


@pytest.fixture
def dataset():
    return get_dataset()


def _seed_rows(admin_id, bob_id):
    return {
        "system_settings": [{
            "id": "settings", "app_name": "TicketVault", "max_attachment_size_mb": 10,
            "max_attachments_per_ticket": 20, "email_enabled": False,
            "default_role_permissions": None, "updated_at": TS, "updated_by": None,
        }],
        "projects": [
            {"id": "project-1", "name": "Platform", "key": "PLAT", "description": None,
             "color": "#3366ff", "created_at": TS, "updated_at": TS},
            {"id": "project-2", "name": "Mobile", "key": "MOB", "description": "iOS and Android",
             "color": "#22aa66", "created_at": TS, "updated_at": TS},
        ],
        "roles": [{
            "id": "role-1", "project_id": "project-1", "name": "Member", "color": "#999999",
            "permissions": '["ticket.view", "ticket.edit"]', "is_default": True, "position": 0,
            "created_at": TS, "updated_at": TS,
        }],
        "columns": [
            {"id": "column-1", "project_id": "project-1", "name": "To Do", "position": 0},
            {"id": "column-2", "project_id": "project-2", "name": "Backlog", "position": 0},
        ],
        "labels": [{"id": "label-1", "project_id": "project-1", "name": "bug", "color": "#ff0000"}],
        "sprints": [{
            "id": "sprint-1", "project_id": "project-1", "name": "Sprint 1", "goal": None,
            "status": "active", "start_date": TS, "end_date": None, "completed_at": None,
            "completed_by_id": None, "created_at": TS, "updated_at": TS,
        }],
        "project_members": [{
            "id": "member-1", "project_id": "project-1", "user_id": bob_id, "role_id": "role-1",
            "overrides": None, "created_at": TS, "updated_at": TS,
        }],
        "project_sprint_settings": [{
            "id": "pss-1", "project_id": "project-1", "default_sprint_duration": 14,
            "auto_carry_over_incomplete": True, "done_column_ids": '["column-1"]',
            "created_at": TS, "updated_at": TS,
        }],
        "tickets": [
            {"id": "ticket-1", "project_id": "project-1", "column_id": "column-1", "number": 1,
             "title": "Set up CI", "description": None, "type": "task", "priority": "high",
             "position": 0, "story_points": 3, "due_date": None, "assignee_id": bob_id,
             "creator_id": admin_id, "sprint_id": "sprint-1", "parent_id": None,
             "created_at": TS, "updated_at": TS},
            {"id": "ticket-2", "project_id": "project-1", "column_id": "column-1", "number": 2,
             "title": "Add lint step", "description": "Subtask", "type": "task", "priority": "low",
             "position": 1, "story_points": None, "due_date": None, "assignee_id": None,
             "creator_id": admin_id, "sprint_id": None, "parent_id": "ticket-1",
             "created_at": TS, "updated_at": TS},
            {"id": "ticket-3", "project_id": "project-2", "column_id": "column-2", "number": 1,
             "title": "Crash on launch", "description": None, "type": "bug", "priority": "critical",
             "position": 0, "story_points": None, "due_date": TS, "assignee_id": None,
             "creator_id": bob_id, "sprint_id": None, "parent_id": None,
             "created_at": TS, "updated_at": TS},
        ],
        "ticket_labels": [{"ticket_id": "ticket-1", "label_id": "label-1"}],
        "ticket_links": [{
            "id": "link-1", "from_ticket_id": "ticket-1", "to_ticket_id": "ticket-2",
            "link_type": "blocks", "created_at": TS,
        }],
        "ticket_watchers": [{"id": "watch-1", "ticket_id": "ticket-1", "user_id": bob_id, "created_at": TS}],
        "comments": [{
            "id": "comment-1", "ticket_id": "ticket-1", "author_id": admin_id,
            "content": "Looks good", "created_at": TS, "updated_at": TS,
        }],
        "ticket_edits": [{
            "id": "edit-1", "ticket_id": "ticket-1", "user_id": bob_id, "field": "title",
            "old_value": "CI", "new_value": "Set up CI", "created_at": TS,
        }],
        "attachments": [{
            "id": "attachment-1", "ticket_id": "ticket-1", "uploader_id": admin_id,
            "filename": "design.pdf", "mime_type": "application/pdf",
            "size": len(ATTACHMENT_BYTES), "created_at": TS,
        }],
        "ticket_sprint_history": [{
            "id": "history-1", "ticket_id": "ticket-1", "sprint_id": "sprint-1",
            "entry_type": "added", "exit_status": None, "added_at": TS, "removed_at": None,
        }],
        "invitations": [{
            "id": "invite-1", "project_id": "project-1", "sender_id": admin_id,
            "email": "dave@example.com", "role": "member", "token": "invite-token",
            "status": "pending", "expires_at": TS, "created_at": TS,
        }],
    }


@pytest.fixture
def seeded(dataset):
    """
    A small but complete dataset: 3 users (one admin), 2 projects, 3 tickets,
    one row in every other table, one attachment file and one avatar file.
    """
    with dataset.transaction() as conn:
        admin = create_user(conn, "admin", ADMIN_PASSWORD, is_system_admin=True)
        bob = create_user(conn, "bob", USER_PASSWORD)
        carol = create_user(conn, "carol", USER_PASSWORD)
        Dataset.update(conn, "users", carol["id"], {"avatar": f"/avatars/{carol['id']}.png"})
        for table_name, rows in _seed_rows(admin["id"], bob["id"]).items():
            for row in rows:
                Dataset.insert(conn, table_name, row)

    filestore.write("attachments/attachment-1", ATTACHMENT_BYTES)
    filestore.write(f"avatars/{carol['id']}", AVATAR_BYTES)

    return {
        "admin": admin,
        "bob": bob,
        "carol": carol,
        "attachment_key": "attachments/attachment-1",
        "avatar_key": f"avatars/{carol['id']}",
    }


@pytest.fixture
def admin_credential():
    return ReauthCredential(password=ADMIN_PASSWORD)


@pytest.fixture
def admin_token(seeded):
    return login_user("admin", ADMIN_PASSWORD)


@pytest.fixture
def admin_2fa(seeded):
    """Enable 2FA for the seeded admin; returns the secret and recovery codes."""
    data = setup_mfa("admin")
    enable_mfa("admin", pyotp.TOTP(data["secret"]).now())
    return data
