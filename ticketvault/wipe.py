"""
Wipe coordinator: full reset and project-only reset.

Both take the system-wide destructive lock, check the confirmation phrase and
reauthenticate the actor before opening their single transaction. Uploaded
files are not touched by either; they stay on storage, unreferenced.
"""

import logging
import sqlite3
from typing import Optional

from ticketvault import config
from ticketvault.auth import (
    clear_sessions,
    create_user,
    reauthenticate,
    validate_password_strength,
    validate_username,
    verify_confirmation_phrase,
)
from ticketvault.errors import FatalRestoreError
from ticketvault.models import PROJECT_TABLES, TABLES, ReauthCredential
from ticketvault.security import DestructiveOperationLock, destructive_lock
from ticketvault.storage import Dataset, get_dataset

logger = logging.getLogger(__name__)

FILES_RETAINED_NOTICE = (
    "Previously uploaded attachments and avatars were left on storage and are "
    "no longer referenced by any record."
)


def wipe_all(
    actor: str,
    credential: ReauthCredential,
    confirm_text: str,
    new_admin_username: str,
    new_admin_password: str,
    dataset: Optional[Dataset] = None,
    lock: Optional[DestructiveOperationLock] = None,
) -> dict:
    """
    Delete every row of every table and create one fresh administrator.

    Deletion and account creation commit together, so the system never has
    zero administrators. The new credentials are validated before the
    actor is reauthenticated or anything is deleted.
    """
    dataset = dataset or get_dataset()
    with (lock or destructive_lock).hold("wipe"):
        verify_confirmation_phrase(confirm_text, config.WIPE_CONFIRMATION)
        new_admin_username = validate_username(new_admin_username)
        validate_password_strength(new_admin_password)
        reauthenticate(actor, credential)

        try:
            with dataset.transaction() as conn:
                deleted = {t.name: Dataset.delete_all(conn, t.name) for t in reversed(TABLES)}
                admin = create_user(conn, new_admin_username, new_admin_password, is_system_admin=True)
        except sqlite3.Error as e:
            raise FatalRestoreError("Wipe failed and was rolled back; existing data is unchanged") from e

        logger.warning(
            "Full wipe by %s: %d row(s) deleted, new administrator %s",
            actor, sum(deleted.values()), admin["username"],
        )
        clear_sessions()

    return {
        "deleted": deleted,
        "admin": {"id": admin["id"], "username": admin["username"]},
        "message": FILES_RETAINED_NOTICE,
    }


def wipe_projects(
    actor: str,
    credential: ReauthCredential,
    confirm_text: str,
    dataset: Optional[Dataset] = None,
    lock: Optional[DestructiveOperationLock] = None,
) -> dict:
    """
    Delete all project-scoped rows; users, credentials, settings and
    sessions stay.

    Returns how many projects and tickets were actually removed.
    """
    dataset = dataset or get_dataset()
    with (lock or destructive_lock).hold("wipe-projects"):
        verify_confirmation_phrase(confirm_text, config.WIPE_PROJECTS_CONFIRMATION)
        reauthenticate(actor, credential)

        try:
            with dataset.transaction() as conn:
                deleted = {t.name: Dataset.delete_all(conn, t.name) for t in reversed(PROJECT_TABLES)}
        except sqlite3.Error as e:
            raise FatalRestoreError("Project wipe failed and was rolled back; existing data is unchanged") from e

        logger.warning("Project wipe by %s: %s", actor, deleted)

    return {"projects": deleted["projects"], "tickets": deleted["tickets"]}
