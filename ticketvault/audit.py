import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

from ticketvault import config

logger = logging.getLogger(__name__)

# Serializes read-modify-write of the log file
_log_lock = threading.Lock()


def _log_file() -> Path:
    path = Path(config.AUDIT_LOG)
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("[]")
    return path


def log_action(username: str, action: str, details: str = None):
    """
    Append one record to the audit trail.

    The trail lives beside the dataset, not in it, so imports and wipes
    never erase the record of having happened.
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "username": username,
        "action": action,
        "details": details or "",
    }

    with _log_lock:
        path = _log_file()
        with open(path, "r+") as f:
            try:
                logs = json.load(f)
            except json.JSONDecodeError:
                logger.warning("Audit log %s was unreadable; starting a new one", path)
                logs = []

            logs.append(entry)
            f.seek(0)
            json.dump(logs, f, indent=2)
            f.truncate()


def get_logs(username: str = None):
    """Audit records, newest first; all users when username is None."""
    with _log_lock:
        path = _log_file()
        with open(path, "r") as f:
            try:
                all_logs = json.load(f)
            except json.JSONDecodeError:
                logger.warning("Audit log %s is unreadable", path)
                return []

    if username is not None:
        all_logs = [log for log in all_logs if log["username"] == username]
    all_logs.sort(key=lambda x: x["timestamp"], reverse=True)
    return all_logs
