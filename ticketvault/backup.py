"""
Export orchestration and the shared "open an artifact" path.

Export:  serialize -> (encrypt if password) -> (pack if files requested)
Open:    size check -> (unpack if archive) -> parse envelope -> (decrypt) -> validate

open_artifact() never touches the live dataset, so preview and the first
half of a restore share it.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from ticketvault import config, filestore
from ticketvault.auth import reauthenticate
from ticketvault.bundle import ArchiveContents, ArtifactKind, detect_kind, pack, unpack
from ticketvault.crypto import BackupEnvelope, decrypt, encrypt
from ticketvault.errors import AuthError, ValidationError
from ticketvault.models import ExportArtifact, ExportOptions, ReauthCredential
from ticketvault.serializer import ValidatedDocument, file_references, parse, serialize, to_bytes

logger = logging.getLogger(__name__)


def generate_export_filename(options: ExportOptions, today: Optional[date] = None) -> str:
    extension = "zip" if options.will_be_zip else "json"
    return f"ticketvault-backup-{(today or date.today()).isoformat()}.{extension}"


def export_database(
    actor: str,
    options: ExportOptions,
    credential: Optional[ReauthCredential] = None,
) -> ExportArtifact:
    """
    Build an export artifact from the live dataset.

    Read-only; runs alongside other exports and reads. Protecting an export
    with a password is a sensitive action and needs the actor's credential.
    Files that are referenced but missing from storage are left out of the
    archive and recorded as absent in its manifest.
    """
    if options.password:
        if credential is None:
            raise AuthError("Reauthentication required for a password-protected export")
        reauthenticate(actor, credential)

    document = serialize(options, actor)
    payload = to_bytes(document)

    if options.password:
        metadata = {
            "exportedAt": document["exportedAt"],
            "exportedBy": document["exportedBy"],
            "options": document["options"],
        }
        payload = encrypt(payload, options.password, metadata).to_bytes()

    if options.will_be_zip:
        references = file_references(document["entities"], options)
        files = []
        for reference in references:
            data = filestore.read(reference.relative_path)
            if data is None:
                logger.warning("Export: %s is referenced but not in storage", reference.relative_path)
                continue
            files.append((reference.relative_path, data))
        content = pack(payload, files, references)
        content_type = "application/zip"
    else:
        content = payload
        content_type = "application/json"

    logger.info(
        "Export by %s: %d bytes (archive=%s, encrypted=%s)",
        actor, len(content), options.will_be_zip, bool(options.password),
    )
    return ExportArtifact(
        filename=generate_export_filename(options),
        content_type=content_type,
        content=content,
        is_archive=options.will_be_zip,
        encrypted=bool(options.password),
    )


# ══════════════════════════════════════════════════════════════════════════════
# Opening an artifact (no side effects)
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class OpenedArtifact:
    document: ValidatedDocument
    archive: Optional[ArchiveContents]
    encrypted: bool

    @property
    def is_archive(self) -> bool:
        return self.archive is not None


def check_size(artifact: bytes):
    if not artifact:
        raise ValidationError("Backup file is empty")
    if len(artifact) > config.MAX_BACKUP_BYTES:
        raise ValidationError(
            f"Backup file is too large (limit {config.MAX_BACKUP_BYTES // (1024 * 1024)} MB)"
        )


def open_artifact(artifact: bytes, decryption_password: Optional[str] = None) -> OpenedArtifact:
    """
    Decode an artifact down to a validated document.

    An archive is unpacked first because its document entry may itself be an
    encrypted envelope. ValidationError and DecryptionError both surface here,
    before any caller has changed anything.
    """
    check_size(artifact)

    archive = None
    payload = artifact
    if detect_kind(artifact) is ArtifactKind.ARCHIVE:
        archive = unpack(artifact)
        payload = archive.document

    envelope = BackupEnvelope.from_bytes(payload)
    if envelope.encrypted:
        if envelope.schema_version not in config.COMPATIBLE_SCHEMA_VERSIONS:
            raise ValidationError(f"Unsupported backup schema version {envelope.schema_version!r}")
        if not decryption_password:
            raise ValidationError(
                "This backup is encrypted. Supply the password it was exported with."
            )

    document = parse(decrypt(envelope, decryption_password))
    return OpenedArtifact(document=document, archive=archive, encrypted=envelope.encrypted)


def preview_backup(artifact: bytes, decryption_password: Optional[str] = None) -> dict:
    """Describe what an import of this artifact would restore, without doing it."""
    opened = open_artifact(artifact, decryption_password)
    references = opened.document.file_references()
    if opened.archive is not None:
        references = opened.archive.reconcile(references)

    document = opened.document
    return {
        "schemaVersion": document.schema_version,
        "exportedAt": document.exported_at,
        "exportedBy": document.exported_by,
        "encrypted": opened.encrypted,
        "isArchive": opened.is_archive,
        "options": document.options.to_dict(),
        "counts": document.counts,
        "files": {
            "referenced": len(references),
            "present": sum(1 for r in references if r.present),
            "missingFiles": [r.relative_path for r in references if not r.present],
        },
    }
