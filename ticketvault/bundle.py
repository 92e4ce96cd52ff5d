"""
File bundler: a backup document plus its binary files in one ZIP archive.

Archive layout:
    backup.json                   document, or encrypted envelope
    manifest.json                 informational list of referenced files
    files/attachments/<id>        one entry per attachment binary
    files/avatars/<userId>        one entry per avatar binary

The embedded manifest is never trusted on the way back in: which files are
present is decided by the entries actually found in the archive.
"""

import io
import json
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Tuple

from ticketvault import config
from ticketvault.errors import PartialDataError, ValidationError

logger = logging.getLogger(__name__)

DOCUMENT_ENTRY = "backup.json"
MANIFEST_ENTRY = "manifest.json"
FILES_PREFIX = "files/"

_ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06")   # local header, empty archive


class ArtifactKind(str, Enum):
    PLAIN = "plain"
    ARCHIVE = "archive"


@dataclass
class FileManifestEntry:
    """One file the backup document references."""

    entity_type: str
    entity_id: str
    relative_path: str
    present: bool = False

    @classmethod
    def for_entity(cls, entity_type: str, entity_id: str, present: bool = False) -> "FileManifestEntry":
        return cls(entity_type, entity_id, f"{entity_type}/{entity_id}", present)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "relativePath": self.relative_path,
            "present": self.present,
        }


@dataclass
class ArchiveContents:
    """Result of unpacking an archive."""

    document: bytes
    files: Dict[str, bytes] = field(default_factory=dict)
    manifest: List[FileManifestEntry] = field(default_factory=list)

    def read(self, relative_path: str) -> bytes:
        """Bytes of one file; PartialDataError if the archive did not carry it."""
        try:
            return self.files[relative_path]
        except KeyError:
            raise PartialDataError(relative_path) from None

    def reconcile(self, references: Iterable[FileManifestEntry]) -> List[FileManifestEntry]:
        """Mark each reference present or absent from what was really unpacked."""
        return [
            FileManifestEntry(r.entity_type, r.entity_id, r.relative_path, r.relative_path in self.files)
            for r in references
        ]


def detect_kind(data: bytes) -> ArtifactKind:
    """Sniff the leading signature: ZIP archive, or bare (possibly encrypted) JSON."""
    if data[:4] in _ZIP_SIGNATURES:
        return ArtifactKind.ARCHIVE
    return ArtifactKind.PLAIN


def is_safe_segment(name: str) -> bool:
    """True for a name usable as one component of a stored file path."""
    return bool(name) and name not in (".", "..") and "/" not in name and "\\" not in name


def _safe_relative_path(path: str) -> bool:
    if not path or path.startswith("/"):
        return False
    return all(is_safe_segment(part) for part in path.split("/"))


def pack(
    document: bytes,
    files: Iterable[Tuple[str, bytes]],
    references: Iterable[FileManifestEntry] = (),
) -> bytes:
    """
    Build an archive from a serialized document and the supplied files.

    references lists every file the document points at; the manifest records
    each of them with present=True only when its bytes were supplied here.
    """
    supplied: Dict[str, bytes] = {}
    for relative_path, data in files:
        if not _safe_relative_path(relative_path):
            raise ValueError(f"Unsafe archive path: {relative_path!r}")
        supplied[relative_path] = data

    manifest = [
        FileManifestEntry(r.entity_type, r.entity_id, r.relative_path, r.relative_path in supplied)
        for r in references
    ]

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(DOCUMENT_ENTRY, document)
        archive.writestr(MANIFEST_ENTRY, json.dumps([m.to_dict() for m in manifest], indent=2))
        for relative_path, data in supplied.items():
            archive.writestr(FILES_PREFIX + relative_path, data)
    return buffer.getvalue()


def _parse_manifest(raw: bytes) -> List[FileManifestEntry]:
    try:
        items = json.loads(raw.decode("utf-8"))
        return [
            FileManifestEntry(
                str(item["entityType"]), str(item["entityId"]), str(item["relativePath"])
            )
            for item in items
        ]
    except (UnicodeDecodeError, ValueError, TypeError, KeyError):
        logger.warning("Ignoring unreadable archive manifest")
        return []


def unpack(archive_bytes: bytes) -> ArchiveContents:
    """
    Read an archive back into document, file lookup and manifest.

    Structural problems (not a ZIP, no document entry, over the size limits,
    unreadable document) raise ValidationError. A damaged or unsafe file
    entry is only logged and left out, so it surfaces later as a missing file.
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError):
        raise ValidationError("Backup archive is not a readable ZIP file") from None

    with archive:
        infos = [info for info in archive.infolist() if not info.is_dir()]
        if len(infos) > config.ARCHIVE_MAX_ENTRIES:
            raise ValidationError("Backup archive has too many entries")
        if sum(info.file_size for info in infos) > config.ARCHIVE_MAX_UNCOMPRESSED_BYTES:
            raise ValidationError("Backup archive is too large once uncompressed")

        names = {info.filename for info in infos}
        if DOCUMENT_ENTRY not in names:
            raise ValidationError(f"{DOCUMENT_ENTRY} not found in backup archive")

        try:
            document = archive.read(DOCUMENT_ENTRY)
        except (zipfile.BadZipFile, zlib.error, NotImplementedError):
            raise ValidationError(f"{DOCUMENT_ENTRY} in backup archive is corrupted") from None

        contents = ArchiveContents(document=document)

        for info in infos:
            name = info.filename
            if name == MANIFEST_ENTRY:
                try:
                    contents.manifest = _parse_manifest(archive.read(info))
                except (zipfile.BadZipFile, zlib.error, NotImplementedError):
                    logger.warning("Ignoring corrupted archive manifest")
                continue
            if not name.startswith(FILES_PREFIX):
                continue

            relative_path = name[len(FILES_PREFIX):]
            if not _safe_relative_path(relative_path):
                logger.warning("Skipping unsafe archive entry %r", name)
                continue
            try:
                contents.files[relative_path] = archive.read(info)
            except (zipfile.BadZipFile, zlib.error, NotImplementedError):
                logger.warning("Skipping corrupted archive entry %r", name)

    # Presence is what we found, whatever the manifest claimed
    contents.manifest = contents.reconcile(contents.manifest)
    return contents

