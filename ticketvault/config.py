import os
from pathlib import Path

# ── Directory & file paths ─────────────────────────────────────────────────────
# Everything lives under one data directory so a deployment (or a test) can
# relocate the whole engine with a single environment variable.
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("TICKETVAULT_DATA_DIR", BASE_DIR / "data"))

DB_PATH   = DATA_DIR / "ticketvault.db"    # live dataset (SQLite)
FILES_DIR = DATA_DIR / "files"             # durable store for attachments / avatars
KEY_FILE  = DATA_DIR / "secret.key"        # Fernet key for second-factor secrets at rest
AUDIT_LOG = DATA_DIR / "audit_log.json"    # append-only audit trail, survives wipes

# ── Backup document format ────────────────────────────────────────────────────
SCHEMA_VERSION = 1
COMPATIBLE_SCHEMA_VERSIONS = (1,)

# Largest artifact accepted for import or preview (bytes)
MAX_BACKUP_BYTES = 500 * 1024 * 1024

# ── Archive limits ────────────────────────────────────────────────────────────
ARCHIVE_MAX_ENTRIES = 100_000
ARCHIVE_MAX_UNCOMPRESSED_BYTES = 2 * 1024 * 1024 * 1024

# ── Backup encryption key derivation (Argon2id) ───────────────────────────────
KDF_TIME_COST   = 3
KDF_MEMORY_COST = 64 * 1024     # KiB → 64 MiB
KDF_PARALLELISM = 4

# Bounds applied to parameters read back from an envelope, so a crafted
# artifact cannot make the server burn arbitrary memory or CPU.
KDF_MAX_TIME_COST   = 10
KDF_MAX_MEMORY_COST = 1024 * 1024   # 1 GiB
KDF_MAX_PARALLELISM = 16

# ── Account password hashing (Argon2id) ───────────────────────────────────────
PASSWORD_TIME_COST   = 3
PASSWORD_MEMORY_COST = 64 * 1024
PASSWORD_PARALLELISM = 4
MIN_PASSWORD_LENGTH  = 12

# ── Second factor ─────────────────────────────────────────────────────────────
TOTP_ISSUER = "TicketVault"
TOTP_VALID_WINDOW = 1           # ±1 step of 30 s clock-skew tolerance
RECOVERY_CODE_COUNT = 8

# ── Rate limiting ─────────────────────────────────────────────────────────────
RATE_LIMIT_MAX_ATTEMPTS = 5
RATE_LIMIT_TIME_WINDOW  = 300   # seconds
RATE_LIMIT_BLOCK_SECONDS = 60

# ── Confirmation phrases (exact, case-sensitive) ──────────────────────────────
IMPORT_CONFIRMATION = "DELETE ALL DATA"
WIPE_CONFIRMATION = "WIPE ALL DATA"
WIPE_PROJECTS_CONFIRMATION = "DELETE ALL PROJECTS"
