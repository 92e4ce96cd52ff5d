import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Optional, Tuple

from ticketvault import config
from ticketvault.errors import OperationInProgressError, TicketVaultError

logger = logging.getLogger(__name__)


class RateLimitedError(TicketVaultError):
    """Raised while a client is blocked for too many failed attempts."""


class SecurityManager:
    """
    Tracks failed password/second-factor attempts per client and blocks a
    client that exceeds the allowed failure threshold within a time window.

    Used for logins and for the reauthentication that precedes every
    destructive operation, so a stolen session cannot brute-force the
    password through the import or wipe endpoints.

    All state is in-memory and resets on server restart.
    """

    def __init__(self):
        # client -> (failure_count, timestamp_of_first_failure_in_current_window)
        self.failed_attempts: Dict[str, Tuple[int, float]] = {}

        # client -> Unix timestamp at which the block expires
        self.blocked_clients: Dict[str, float] = {}

        self._lock = threading.Lock()

    # ──────────────────────────────────────────────────────────────────────────
    def check_rate_limit(self, client: str):
        """
        Raise RateLimitedError if the client is currently blocked.

        Called BEFORE credentials are checked, so a blocked client is turned
        away without touching the dataset. An expired block is lifted and the
        failure history cleared.
        """
        current_time = time.time()
        with self._lock:
            unblock_time = self.blocked_clients.get(client)
            if unblock_time is None:
                return
            if current_time < unblock_time:
                remaining = int(unblock_time - current_time)
                raise RateLimitedError(
                    f"Too many failed attempts. Try again in {remaining} seconds."
                )
            del self.blocked_clients[client]
            self.failed_attempts.pop(client, None)

    # ──────────────────────────────────────────────────────────────────────────
    def record_failed_attempt(self, client: str, username: Optional[str] = None):
        """
        Record one failed attempt for the client.

        Failures older than RATE_LIMIT_TIME_WINDOW are stale: the counter
        restarts so occasional honest mistakes never add up to a block.
        """
        current_time = time.time()
        with self._lock:
            if client not in self.failed_attempts:
                self.failed_attempts[client] = (1, current_time)
                return

            count, first_time = self.failed_attempts[client]
            if current_time - first_time > config.RATE_LIMIT_TIME_WINDOW:
                self.failed_attempts[client] = (1, current_time)
                return

            new_count = count + 1
            self.failed_attempts[client] = (new_count, first_time)

            if new_count >= config.RATE_LIMIT_MAX_ATTEMPTS:
                self.blocked_clients[client] = current_time + config.RATE_LIMIT_BLOCK_SECONDS
                logger.warning(
                    "SECURITY ALERT: blocked client %s after %d failed attempts (user: %s)",
                    client, new_count, username or "unknown",
                )

    # ──────────────────────────────────────────────────────────────────────────
    def reset_attempts(self, client: str):
        """Clear the failure counter after a successful attempt."""
        with self._lock:
            self.failed_attempts.pop(client, None)

    def reset(self):
        with self._lock:
            self.failed_attempts.clear()
            self.blocked_clients.clear()


# ══════════════════════════════════════════════════════════════════════════════
# System-wide destructive-operation lock
# ══════════════════════════════════════════════════════════════════════════════

class DestructiveOperationLock:
    """
    Only one import or wipe may run at a time across the process.

    A second attempt is rejected immediately, never queued: acquisition is
    non-blocking and a busy lock raises OperationInProgressError before the
    caller has done any work.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.holder: Optional[str] = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self, operation: str):
        if not self._lock.acquire(blocking=False):
            logger.warning("Rejected %s: %s already in progress", operation, self.holder)
            raise OperationInProgressError()
        self.holder = operation
        try:
            yield
        finally:
            self.holder = None
            self._lock.release()


# ── Module-level singletons ────────────────────────────────────────────────────
# Shared by every request handled by this process.
security_manager = SecurityManager()
destructive_lock = DestructiveOperationLock()
