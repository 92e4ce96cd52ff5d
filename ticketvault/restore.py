"""
Restore coordinator: the only code path that replaces the live dataset.

    IDLE -> VALIDATING -> APPLYING -> RESTORING_FILES -> REPORTING -> IDLE
                 |            |              |
                 +------------+--------------+--> FAILED -> IDLE

Everything in VALIDATING (lock, confirmation phrase, reauthentication,
unpack, decrypt, document validation) happens before the dataset is touched.
APPLYING and RESTORING_FILES run inside one SQLite transaction: the old rows
are deleted, the document's rows inserted in dependency order and the files
written, and only then is the transaction committed. A failure anywhere in
there rolls the rows back and puts any overwritten files back as they were.
"""

import logging
from enum import Enum
from typing import List, Optional, Tuple

from ticketvault import config, filestore
from ticketvault.auth import clear_sessions, reauthenticate, verify_confirmation_phrase
from ticketvault.backup import OpenedArtifact, open_artifact
from ticketvault.bundle import ArchiveContents, FileManifestEntry
from ticketvault.errors import FatalRestoreError, PartialDataError
from ticketvault.models import TABLES, FileRestoreSummary, ImportResult, ReauthCredential
from ticketvault.security import DestructiveOperationLock, destructive_lock
from ticketvault.storage import Dataset, get_dataset

logger = logging.getLogger(__name__)


class RestoreState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    APPLYING = "applying"
    RESTORING_FILES = "restoring_files"
    REPORTING = "reporting"
    FAILED = "failed"


TRANSITIONS = {
    RestoreState.IDLE: {RestoreState.VALIDATING},
    RestoreState.VALIDATING: {RestoreState.APPLYING, RestoreState.FAILED},
    RestoreState.APPLYING: {RestoreState.RESTORING_FILES, RestoreState.FAILED},
    RestoreState.RESTORING_FILES: {RestoreState.REPORTING, RestoreState.FAILED},
    RestoreState.REPORTING: {RestoreState.IDLE},
    RestoreState.FAILED: {RestoreState.IDLE},
}


class RestoreCoordinator:
    """Runs one import at a time; keeps the states it went through in `history`."""

    def __init__(self, dataset: Optional[Dataset] = None, lock: Optional[DestructiveOperationLock] = None):
        self._dataset = dataset
        self.lock = lock or destructive_lock
        self.state = RestoreState.IDLE
        self.history: List[RestoreState] = [RestoreState.IDLE]

    @property
    def dataset(self) -> Dataset:
        return self._dataset or get_dataset()

    def can_advance(self, target: RestoreState) -> bool:
        return target in TRANSITIONS[self.state]

    def _advance(self, target: RestoreState):
        if not self.can_advance(target):
            raise RuntimeError(f"Illegal restore transition {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def _fail(self):
        self._advance(RestoreState.FAILED)
        self._advance(RestoreState.IDLE)

    # ──────────────────────────────────────────────────────────────────────────
    def restore(
        self,
        artifact: bytes,
        *,
        actor: str,
        credential: ReauthCredential,
        confirm_text: str,
        decryption_password: Optional[str] = None,
    ) -> ImportResult:
        """
        Replace the live dataset with the contents of a backup artifact.

        The system-wide lock is taken first, so a concurrent attempt is
        turned away before it checks a password, burns a recovery code or
        decrypts anything. Missing archive files do not fail the import;
        they are counted in the result.
        """
        with self.lock.hold("import"):
            self.state = RestoreState.IDLE
            self.history = [RestoreState.IDLE]
            self._advance(RestoreState.VALIDATING)

            try:
                verify_confirmation_phrase(confirm_text, config.IMPORT_CONFIRMATION)
                reauthenticate(actor, credential)
                opened = open_artifact(artifact, decryption_password)
            except Exception:
                self._fail()
                raise

            summary = self._apply(opened)

            self._advance(RestoreState.REPORTING)
            result = ImportResult(counts=opened.document.counts, files=summary)
            logger.warning(
                "Database replaced from backup by %s: %s (%d file(s) missing)",
                actor, result.counts, len(summary.missing_files),
            )
            clear_sessions()
            self._advance(RestoreState.IDLE)
            return result

    # ──────────────────────────────────────────────────────────────────────────
    def _apply(self, opened: OpenedArtifact) -> FileRestoreSummary:
        self._advance(RestoreState.APPLYING)
        document = opened.document
        references = document.file_references()
        summary = FileRestoreSummary()
        written: List[Tuple[str, Optional[bytes]]] = []

        try:
            with self.dataset.transaction(defer_foreign_keys=True) as conn:
                for table in reversed(TABLES):
                    Dataset.delete_all(conn, table.name)
                for table in TABLES:
                    for row in document.rows[table.name]:
                        Dataset.insert(conn, table.name, row)

                self._advance(RestoreState.RESTORING_FILES)
                self._restore_files(opened.archive, references, summary, written)
        except Exception as e:
            self._revert_files(written)
            self._fail()
            logger.error("Import rolled back: %s", e)
            raise FatalRestoreError("Import failed and was rolled back; existing data is unchanged") from e

        return summary

    @staticmethod
    def _restore_files(
        archive: Optional[ArchiveContents],
        references: List[FileManifestEntry],
        summary: FileRestoreSummary,
        written: List[Tuple[str, Optional[bytes]]],
    ):
        for reference in references:
            if archive is None:
                # Options claim files but the artifact is a bare document
                summary.record(reference.entity_type, False, reference.relative_path)
                continue
            try:
                data = archive.read(reference.relative_path)
            except PartialDataError as e:
                logger.warning("Import: %s", e)
                summary.record(reference.entity_type, False, e.relative_path)
                continue

            written.append((reference.relative_path, filestore.read(reference.relative_path)))
            filestore.write(reference.relative_path, data)
            summary.record(reference.entity_type, True, reference.relative_path)

    @staticmethod
    def _revert_files(written: List[Tuple[str, Optional[bytes]]]):
        for key, previous in reversed(written):
            try:
                if previous is None:
                    filestore.delete(key)
                else:
                    filestore.write(key, previous)
            except OSError:
                logger.exception("Could not revert file %s after a failed import", key)


def restore_database(artifact: bytes, **kwargs) -> ImportResult:
    """One-shot import with a fresh coordinator."""
    return RestoreCoordinator().restore(artifact, **kwargs)
