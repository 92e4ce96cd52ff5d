import base64
import io
import json
import logging
import re
import secrets
import unicodedata
import uuid
from datetime import datetime, timezone

import pyotp
import qrcode
from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from ticketvault import config
from ticketvault.crypto import decrypt_secret, encrypt_secret
from ticketvault.errors import (
    AuthError,
    DecryptionError,
    PermissionDeniedError,
    SecondFactorRequired,
    ValidationError,
)
from ticketvault.models import ReauthCredential
from ticketvault.storage import Dataset, get_dataset

logger = logging.getLogger(__name__)

# token -> username; in-memory, so a restart signs everyone out
SESSIONS = {}

USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,30}$")
RECOVERY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ══════════════════════════════════════════════════════════════════════════════
# Password hashing & input validation
# ══════════════════════════════════════════════════════════════════════════════

def _hasher() -> PasswordHasher:
    return PasswordHasher(
        time_cost=config.PASSWORD_TIME_COST,
        memory_cost=config.PASSWORD_MEMORY_COST,
        parallelism=config.PASSWORD_PARALLELISM,
    )


def hash_password(password: str) -> str:
    return _hasher().hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    try:
        return _hasher().verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def validate_username(username: str) -> str:
    """Return the NFC-normalised username or raise ValidationError."""
    normalized = unicodedata.normalize("NFC", username or "").strip()
    if not USERNAME_PATTERN.match(normalized):
        raise ValidationError(
            "Username must be 3-30 characters of letters, digits, '_' or '-'"
        )
    return normalized


def validate_password_strength(password: str):
    if len(password or "") < config.MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {config.MIN_PASSWORD_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        raise ValidationError("Password must contain an upper-case letter")
    if not re.search(r"[a-z]", password):
        raise ValidationError("Password must contain a lower-case letter")
    if not re.search(r"[0-9]", password):
        raise ValidationError("Password must contain a digit")


# ══════════════════════════════════════════════════════════════════════════════
# Accounts
# ══════════════════════════════════════════════════════════════════════════════

def _public(user: dict) -> dict:
    """A user row without credential material."""
    hidden = {"password_hash", "totp_secret", "totp_recovery_codes"}
    return {k: v for k, v in user.items() if k not in hidden}


def get_user(username: str):
    with get_dataset().connection() as conn:
        return Dataset.fetch_one(conn, "users", "username", username)


def create_user(conn, username: str, password: str, is_system_admin: bool = False, name: str = None) -> dict:
    """
    Insert a user on an open connection (usually inside a caller's transaction).

    Inputs are validated before anything is written.
    """
    username = validate_username(username)
    validate_password_strength(password)
    if Dataset.fetch_one(conn, "users", "username", username):
        raise ValidationError("User exists")

    now = _now()
    row = {
        "id": str(uuid.uuid4()),
        "username": username,
        "email": None,
        "name": name or username,
        "avatar": None,
        "password_hash": hash_password(password),
        "is_system_admin": is_system_admin,
        "is_active": True,
        "created_at": now,
        "updated_at": now,
        "last_login_at": None,
        "totp_secret": None,
        "totp_enabled": False,
        "totp_recovery_codes": None,
    }
    Dataset.insert(conn, "users", row)
    return row


def create_initial_admin(username: str, password: str) -> dict:
    """Provision the first administrator. Only allowed while there are no users."""
    with get_dataset().transaction() as conn:
        if Dataset.count(conn, "users") > 0:
            raise ValidationError("Setup has already been completed")
        user = create_user(conn, username, password, is_system_admin=True)
    logger.info("Initial administrator %s created", user["username"])
    return _public(user)


# ══════════════════════════════════════════════════════════════════════════════
# Sessions
# ══════════════════════════════════════════════════════════════════════════════

def _start_session(user: dict) -> str:
    with get_dataset().transaction() as conn:
        Dataset.update(conn, "users", user["id"], {"last_login_at": _now()})
    token = secrets.token_hex(32)
    SESSIONS[token] = user["username"]
    return token


def login_user(username: str, password: str) -> str:
    """
    Password login. Accounts with a second factor get SecondFactorRequired
    and must use login_with_mfa instead.
    """
    user = verify_credentials(username, password)
    if user["totp_enabled"]:
        raise SecondFactorRequired("Two-factor code required")
    return _start_session(user)


def login_with_mfa(username: str, password: str, code: str, is_recovery_code: bool = False) -> str:
    user = verify_credentials(username, password)
    if user["totp_enabled"]:
        verify_second_factor(username, code, is_recovery_code)
    return _start_session(user)


def require_auth(token: str) -> str:
    if not token or token not in SESSIONS:
        raise AuthError("Unauthorized")
    return SESSIONS[token]


def require_admin(token: str) -> dict:
    """Resolve a session to an active system administrator's user row."""
    username = require_auth(token)
    user = get_user(username)
    if not user or not user["is_active"]:
        SESSIONS.pop(token, None)
        raise AuthError("Unauthorized")
    if not user["is_system_admin"]:
        raise PermissionDeniedError("Administrator access required")
    return user


def clear_sessions():
    """Sign every client out. Called after an import or a wipe."""
    count = len(SESSIONS)
    SESSIONS.clear()
    logger.info("Cleared %d session(s)", count)


# ══════════════════════════════════════════════════════════════════════════════
# Authorization gate
# ══════════════════════════════════════════════════════════════════════════════

def verify_credentials(username: str, password: str) -> dict:
    """Return the user row if the password matches an active account."""
    user = get_user(username)
    if not user or not user["is_active"] or not user["password_hash"]:
        raise AuthError("Invalid credentials")
    if not verify_password(user["password_hash"], password or ""):
        raise AuthError("Invalid credentials")
    return user


def _totp_for(user: dict) -> pyotp.TOTP:
    try:
        return pyotp.TOTP(decrypt_secret(user["totp_secret"]))
    except DecryptionError:
        logger.warning("TOTP secret for %s cannot be decrypted with this server's key", user["username"])
        raise AuthError("Two-factor authentication cannot be verified on this server") from None


def _normalize_recovery_code(code: str) -> str:
    code = code.strip().upper().replace(" ", "")
    if len(code) == 10 and "-" not in code:
        code = f"{code[:5]}-{code[5:]}"
    return code


def verify_second_factor(username: str, code: str, is_recovery_code: bool = False):
    """
    Check a TOTP code (live window plus TOTP_VALID_WINDOW steps of skew) or a
    recovery code. A matching recovery code is blanked in the same
    transaction that finds it, so it can never be used twice.
    """
    code = (code or "").strip()
    if not code:
        raise AuthError("Authentication code required")

    if not is_recovery_code:
        user = get_user(username)
        if not user or not user["totp_enabled"]:
            raise AuthError("Two-factor authentication is not enabled")
        if not _totp_for(user).verify(code, valid_window=config.TOTP_VALID_WINDOW):
            raise AuthError("Invalid authentication code")
        return

    code = _normalize_recovery_code(code)
    with get_dataset().transaction() as conn:
        user = Dataset.fetch_one(conn, "users", "username", username)
        if not user or not user["totp_enabled"]:
            raise AuthError("Two-factor authentication is not enabled")
        hashes = json.loads(user["totp_recovery_codes"] or "[]")
        for i, stored in enumerate(hashes):
            if stored and verify_password(stored, code):
                hashes[i] = ""
                Dataset.update(conn, "users", user["id"], {"totp_recovery_codes": json.dumps(hashes)})
                remaining = sum(1 for h in hashes if h)
                logger.warning("Recovery code used by %s (%d left)", username, remaining)
                return
    raise AuthError("Invalid recovery code")


def verify_confirmation_phrase(typed: str, required: str):
    """Exact, case-sensitive match; anything else is a ValidationError."""
    if typed != required:
        raise ValidationError(f'Confirmation text must be exactly "{required}"')


def check_mfa_enabled(username: str) -> bool:
    """The probe callers use to decide whether to ask for a code at all."""
    user = get_user(username)
    if not user:
        return False
    return bool(user["totp_enabled"])


def reauthenticate(username: str, credential: ReauthCredential) -> dict:
    """
    Re-check the acting user before a sensitive action.

    Password first; then, only if the account has 2FA on, the code. A right
    password without a code raises SecondFactorRequired so the caller can
    prompt for the code alone.
    """
    user = verify_credentials(username, credential.password)
    if user["totp_enabled"]:
        if not credential.totp_code:
            raise SecondFactorRequired("Two-factor code required")
        verify_second_factor(username, credential.totp_code, credential.is_recovery_code)
    return user


# ══════════════════════════════════════════════════════════════════════════════
# Second-factor enrollment
# ══════════════════════════════════════════════════════════════════════════════

def _generate_qr_code(data: str) -> str:
    """Generate QR code and return as base64 encoded PNG"""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


def _generate_recovery_codes(count: int = None) -> list:
    codes = []
    for _ in range(count or config.RECOVERY_CODE_COUNT):
        code = "".join(secrets.choice(RECOVERY_ALPHABET) for _ in range(10))
        codes.append(f"{code[:5]}-{code[5:]}")
    return codes


def _store_recovery_codes(conn, user_id: str, codes: list):
    hashes = [hash_password(code) for code in codes]
    Dataset.update(conn, "users", user_id, {"totp_recovery_codes": json.dumps(hashes)})


def setup_mfa(username: str) -> dict:
    """
    Start enrollment: new secret, provisioning URI, QR code and recovery codes.

    2FA stays off until enable_mfa sees a valid code. The plaintext secret
    and codes are returned once and only their protected forms are stored.
    """
    user = get_user(username)
    if not user:
        raise AuthError("User not found")
    if user["totp_enabled"]:
        raise ValidationError("Two-factor authentication is already enabled")

    secret = pyotp.random_base32()
    recovery_codes = _generate_recovery_codes()
    with get_dataset().transaction() as conn:
        Dataset.update(conn, "users", user["id"], {
            "totp_secret": encrypt_secret(secret),
            "totp_enabled": False,
        })
        _store_recovery_codes(conn, user["id"], recovery_codes)

    provisioning_uri = pyotp.TOTP(secret).provisioning_uri(name=username, issuer_name=config.TOTP_ISSUER)
    return {
        "secret": secret,
        "provisioning_uri": provisioning_uri,
        "qr_code": _generate_qr_code(provisioning_uri),
        "recovery_codes": recovery_codes,
    }


def enable_mfa(username: str, code: str) -> bool:
    """Turn 2FA on once the user proves their authenticator produces valid codes."""
    user = get_user(username)
    if not user or not user["totp_secret"]:
        raise ValidationError("Two-factor setup has not been started")
    if user["totp_enabled"]:
        return True
    if not _totp_for(user).verify((code or "").strip(), valid_window=config.TOTP_VALID_WINDOW):
        raise AuthError("Invalid authentication code")

    with get_dataset().transaction() as conn:
        Dataset.update(conn, "users", user["id"], {"totp_enabled": True})
    return True


def disable_mfa(username: str, credential: ReauthCredential) -> bool:
    user = reauthenticate(username, credential)
    with get_dataset().transaction() as conn:
        Dataset.update(conn, "users", user["id"], {
            "totp_secret": None,
            "totp_enabled": False,
            "totp_recovery_codes": None,
        })
    return True


def regenerate_recovery_codes(username: str, credential: ReauthCredential) -> list:
    """Replace every recovery code; the old ones stop working immediately."""
    user = reauthenticate(username, credential)
    if not user["totp_enabled"]:
        raise ValidationError("Two-factor authentication is not enabled")

    codes = _generate_recovery_codes()
    with get_dataset().transaction() as conn:
        _store_recovery_codes(conn, user["id"], codes)
    return codes
