import base64
import binascii
import json
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ticketvault import config
from ticketvault.errors import DecryptionError, ValidationError

# ── Envelope parameters ───────────────────────────────────────────────────────
KEY_LENGTH  = 32    # AES-256
SALT_LENGTH = 16
IV_LENGTH   = 12    # 96-bit GCM nonce
TAG_LENGTH  = 16    # 128-bit GCM tag
KDF_NAME    = "argon2id"

# Thread lock used to prevent a race where two concurrent requests both see
# that the key file is missing and each write a different key.
_key_lock = threading.Lock()


def get_or_create_key():
    """
    Return the server's Fernet key, creating it on first use.

    This key protects second-factor secrets at rest. It is local to the
    server and never travels inside a backup.
    """
    with _key_lock:
        key_file = config.KEY_FILE
        if key_file.exists():
            return key_file.read_bytes()

        key = Fernet.generate_key()
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key_file.write_bytes(key)
        os.chmod(key_file, 0o600)
        return key


def encrypt_secret(secret: str) -> str:
    """Encrypt a short secret (a TOTP seed) with the server key."""
    return Fernet(get_or_create_key()).encrypt(secret.encode()).decode()


def decrypt_secret(token: str) -> str:
    try:
        return Fernet(get_or_create_key()).decrypt(token.encode()).decode()
    except InvalidToken:
        raise DecryptionError("Stored secret cannot be decrypted with this server's key") from None


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: Any, name: str) -> bytes:
    if not isinstance(value, str):
        raise ValidationError(f"Encrypted backup field '{name}' is missing or not a string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"Encrypted backup field '{name}' is not valid base64") from None


def _aad(schema_version: int) -> bytes:
    # Binds the ciphertext to the schema version recorded beside it
    return f"ticketvault-backup:{schema_version}".encode()


@dataclass
class BackupEnvelope:
    """
    Self-describing container for an export payload.

    encrypted=False: payload is the plaintext JSON document and salt / iv /
    auth_tag / kdf are absent.
    encrypted=True: all of them are present and payload is the ciphertext.
    metadata carries the plaintext header fields (exportedAt, exportedBy,
    options) so an encrypted artifact can still be identified.
    """

    schema_version: int
    encrypted: bool
    payload: bytes
    salt: Optional[bytes] = None
    iv: Optional[bytes] = None
    auth_tag: Optional[bytes] = None
    kdf: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        crypto_fields = (self.salt, self.iv, self.auth_tag, self.kdf)
        if self.encrypted and any(v is None for v in crypto_fields):
            raise ValidationError("Encrypted backup is missing salt, iv, authTag or kdf")
        if not self.encrypted and any(v is not None for v in crypto_fields):
            raise ValidationError("Unencrypted backup must not carry encryption parameters")

    def to_bytes(self) -> bytes:
        """Serialize for the artifact: the bare document, or the envelope JSON."""
        if not self.encrypted:
            return self.payload
        envelope = {
            "schemaVersion": self.schema_version,
            "encrypted": True,
            **self.metadata,
            "kdf": self.kdf,
            "salt": _b64(self.salt),
            "iv": _b64(self.iv),
            "authTag": _b64(self.auth_tag),
            "payload": _b64(self.payload),
        }
        return json.dumps(envelope, indent=2).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "BackupEnvelope":
        """Parse artifact bytes (not an archive) into an envelope."""
        try:
            parsed = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Invalid JSON format") from None
        if not isinstance(parsed, dict):
            raise ValidationError("Invalid export file structure")

        schema_version = parsed.get("schemaVersion")
        if not isinstance(schema_version, int) or isinstance(schema_version, bool):
            raise ValidationError("Backup is missing an integer schemaVersion")

        if parsed.get("encrypted") is not True:
            return cls(schema_version=schema_version, encrypted=False, payload=data)

        kdf = parsed.get("kdf")
        if not isinstance(kdf, dict):
            raise ValidationError("Encrypted backup is missing its kdf parameters")
        metadata = {k: parsed[k] for k in ("exportedAt", "exportedBy", "options") if k in parsed}
        return cls(
            schema_version=schema_version,
            encrypted=True,
            payload=_unb64(parsed.get("payload"), "payload"),
            salt=_unb64(parsed.get("salt"), "salt"),
            iv=_unb64(parsed.get("iv"), "iv"),
            auth_tag=_unb64(parsed.get("authTag"), "authTag"),
            kdf=kdf,
            metadata=metadata,
        )


# ══════════════════════════════════════════════════════════════════════════════
# Key derivation
# ══════════════════════════════════════════════════════════════════════════════

def _kdf_params() -> Dict[str, Any]:
    return {
        "name": KDF_NAME,
        "timeCost": config.KDF_TIME_COST,
        "memoryCost": config.KDF_MEMORY_COST,
        "parallelism": config.KDF_PARALLELISM,
    }


def _checked_kdf_params(kdf: Dict[str, Any]):
    """Validate KDF parameters read back from an artifact and return them."""
    if kdf.get("name") != KDF_NAME:
        raise ValidationError(f"Unsupported key derivation function: {kdf.get('name')!r}")
    values = []
    for name, upper in (
        ("timeCost", config.KDF_MAX_TIME_COST),
        ("memoryCost", config.KDF_MAX_MEMORY_COST),
        ("parallelism", config.KDF_MAX_PARALLELISM),
    ):
        value = kdf.get(name)
        if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= upper:
            raise ValidationError(f"Key derivation parameter '{name}' is out of range")
        values.append(value)
    time_cost, memory_cost, parallelism = values
    # Argon2 needs at least 8 KiB per lane
    if memory_cost < 8 * parallelism:
        raise ValidationError("Key derivation parameter 'memoryCost' is out of range")
    return time_cost, memory_cost, parallelism


def derive_key(password: str, salt: bytes, time_cost: int, memory_cost: int, parallelism: int) -> bytes:
    """Argon2id: slow and memory-hard, so guessing backup passwords stays expensive."""
    return hash_secret_raw(
        password.encode("utf-8"),
        salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=KEY_LENGTH,
        type=Type.ID,
    )


# ══════════════════════════════════════════════════════════════════════════════
# Encryptor
# ══════════════════════════════════════════════════════════════════════════════

def encrypt(plaintext: bytes, password: str, metadata: Optional[Dict[str, Any]] = None) -> BackupEnvelope:
    """
    Encrypt a payload under a password.

    A fresh random salt feeds Argon2id and a fresh random nonce feeds
    AES-256-GCM on every call, so encrypting the same payload twice never
    produces the same envelope.
    """
    if not password:
        raise ValidationError("Backup password must not be empty")

    kdf = _kdf_params()
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(password, salt, kdf["timeCost"], kdf["memoryCost"], kdf["parallelism"])

    # AESGCM appends the tag to the ciphertext; the envelope keeps them apart
    sealed = AESGCM(key).encrypt(iv, plaintext, _aad(config.SCHEMA_VERSION))
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return BackupEnvelope(
        schema_version=config.SCHEMA_VERSION,
        encrypted=True,
        payload=ciphertext,
        salt=salt,
        iv=iv,
        auth_tag=tag,
        kdf=kdf,
        metadata=dict(metadata or {}),
    )


def decrypt(envelope: BackupEnvelope, password: str) -> bytes:
    """
    Re-derive the key from the stored salt and open the payload.

    Any tag failure raises DecryptionError with one fixed message: a wrong
    password and a tampered artifact are indistinguishable to the caller.
    """
    if not envelope.encrypted:
        return envelope.payload

    time_cost, memory_cost, parallelism = _checked_kdf_params(envelope.kdf)
    if len(envelope.iv) != IV_LENGTH or len(envelope.auth_tag) != TAG_LENGTH:
        raise DecryptionError() from None

    try:
        key = derive_key(password or "", envelope.salt, time_cost, memory_cost, parallelism)
    except HashingError:
        # e.g. a salt shorter than Argon2 accepts
        raise DecryptionError() from None

    try:
        return AESGCM(key).decrypt(
            envelope.iv, envelope.payload + envelope.auth_tag, _aad(envelope.schema_version)
        )
    except InvalidTag:
        raise DecryptionError() from None
