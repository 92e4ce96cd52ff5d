import base64
import binascii
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request, Response
from pydantic import BaseModel

from ticketvault.security import RateLimitedError, security_manager   # shared rate limiter

# ── Auth helpers ───────────────────────────────────────────────────────────────
from ticketvault.auth import (
    check_mfa_enabled,           # is 2FA on for this user (the dynamic probe)
    create_initial_admin,        # first administrator, only while no users exist
    disable_mfa,                 # turn 2FA off (reauthentication required)
    enable_mfa,                  # first valid code switches 2FA on
    get_user,
    login_user,                  # password login; 2FA accounts are told to use /login/mfa
    login_with_mfa,              # password + TOTP / recovery code
    regenerate_recovery_codes,   # new recovery codes (reauthentication required)
    require_admin,               # session token -> active system administrator
    require_auth,                # session token -> username
    setup_mfa,                   # secret + QR code + recovery codes
)
from ticketvault.audit import get_logs, log_action
from ticketvault.backup import export_database, preview_backup
from ticketvault.errors import (
    AuthError,
    DecryptionError,
    FatalRestoreError,
    OperationInProgressError,
    PermissionDeniedError,
    SecondFactorRequired,
    TicketVaultError,
    ValidationError,
)
from ticketvault.models import ExportOptions, ReauthCredential
from ticketvault.restore import RestoreCoordinator
from ticketvault.wipe import wipe_all, wipe_projects

# ── Application instance ───────────────────────────────────────────────────────
app = FastAPI(title="TicketVault backup engine")


# ══════════════════════════════════════════════════════════════════════════════
# Request body models
# ══════════════════════════════════════════════════════════════════════════════

class CredentialsReq(BaseModel):
    """Body for POST /setup and POST /login."""
    username: str
    password: str

class MFALoginReq(BaseModel):
    """Body for POST /login/mfa: password AND a second factor."""
    username: str
    password: str
    code: str
    is_recovery_code: bool = False

class MFAVerifyReq(BaseModel):
    """Body for POST /mfa/verify: first code after scanning the QR code."""
    code: str

class ReauthReq(BaseModel):
    """Password re-entered before a sensitive action, plus a code if 2FA is on."""
    password: str
    totp_code: Optional[str] = None
    is_recovery_code: bool = False

    def to_credential(self) -> ReauthCredential:
        return ReauthCredential(self.password, self.totp_code, self.is_recovery_code)

class ExportReq(BaseModel):
    """Body for POST /admin/database/export."""
    include_attachments: bool = False
    include_avatars: bool = False
    backup_password: Optional[str] = None     # encrypts the artifact when set
    credential: Optional[ReauthReq] = None    # required with backup_password

class PreviewReq(BaseModel):
    """Body for POST /admin/database/preview."""
    artifact: str                             # base64 of the exported file
    decryption_password: Optional[str] = None

class ImportReq(BaseModel):
    """Body for POST /admin/database/import."""
    artifact: str
    decryption_password: Optional[str] = None
    credential: ReauthReq
    confirm_text: str                         # must be exactly "DELETE ALL DATA"

class WipeReq(BaseModel):
    """Body for POST /admin/database/wipe."""
    credential: ReauthReq
    confirm_text: str                         # must be exactly "WIPE ALL DATA"
    new_admin_username: str
    new_admin_password: str

class WipeProjectsReq(BaseModel):
    """Body for POST /admin/database/wipe-projects."""
    credential: ReauthReq
    confirm_text: str                         # must be exactly "DELETE ALL PROJECTS"


# ══════════════════════════════════════════════════════════════════════════════
# Error mapping
# ══════════════════════════════════════════════════════════════════════════════

def _http_error(e: TicketVaultError) -> HTTPException:
    """Translate an engine error into the HTTP status the client sees."""
    if isinstance(e, SecondFactorRequired):
        # Distinct from a bad password, so the client can ask for the code alone
        return HTTPException(401, {"message": str(e), "requires_2fa": True})
    if isinstance(e, PermissionDeniedError):
        return HTTPException(403, str(e))
    if isinstance(e, AuthError):
        return HTTPException(401, str(e))
    if isinstance(e, RateLimitedError):
        return HTTPException(429, str(e))
    if isinstance(e, OperationInProgressError):
        return HTTPException(409, str(e))
    if isinstance(e, FatalRestoreError):
        return HTTPException(500, str(e))
    return HTTPException(400, str(e))


def _client(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _rate_limited(request: Request, username: str, action, *args, **kwargs):
    """
    Run an action that checks a password or code, counting failures per client.

    A blocked client is rejected before the action runs. "Second factor
    required" is a prompt, not a failure, and is not counted.
    """
    client = _client(request)
    security_manager.check_rate_limit(client)
    try:
        result = action(*args, **kwargs)
    except SecondFactorRequired:
        raise
    except PermissionDeniedError:
        raise
    except AuthError:
        security_manager.record_failed_attempt(client, username)
        raise
    security_manager.reset_attempts(client)
    return result


def _admin(authorization: Optional[str]) -> dict:
    try:
        return require_admin(authorization)
    except TicketVaultError as e:
        raise _http_error(e)


def _decode_artifact(artifact: str) -> bytes:
    try:
        return base64.b64decode(artifact, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(400, "Backup file must be sent as base64")


# ══════════════════════════════════════════════════════════════════════════════
# Setup & authentication endpoints
# ══════════════════════════════════════════════════════════════════════════════

@app.post("/setup")
def setup(req: CredentialsReq):
    """
    Create the first system administrator.

    Only works on an empty system; afterwards accounts are managed by the
    application itself (or re-provisioned by a full wipe).
    """
    try:
        user = create_initial_admin(req.username, req.password)
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(user["username"], "SETUP", "Initial administrator created")
    return {"ok": True, "user": {"id": user["id"], "username": user["username"]}}


@app.post("/login")
def login(req: CredentialsReq, request: Request):
    """
    Password login.

    Accounts with 2FA enabled get 401 with requires_2fa=true and must call
    /login/mfa. Repeated failures from one client trigger a temporary block (429).
    """
    try:
        token = _rate_limited(request, req.username, login_user, req.username, req.password)
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(req.username, "LOGIN", "Password login")
    return {"token": token}


@app.post("/login/mfa")
def login_mfa(req: MFALoginReq, request: Request):
    """Two-factor login: password and a TOTP or recovery code, both must be correct."""
    try:
        token = _rate_limited(
            request, req.username, login_with_mfa,
            req.username, req.password, req.code, req.is_recovery_code,
        )
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(req.username, "LOGIN", "Two-factor login" + (" (recovery code)" if req.is_recovery_code else ""))
    return {"token": token}


# ══════════════════════════════════════════════════════════════════════════════
# Second-factor endpoints
# ══════════════════════════════════════════════════════════════════════════════

@app.get("/mfa/status/{username}")
def mfa_status(username: str):
    """
    Whether 2FA is on for a user.

    Clients use this to decide whether to show a code field at login and
    in the destructive-operation dialogs.
    """
    return {"mfa_enabled": check_mfa_enabled(username)}


@app.post("/mfa/setup")
def mfa_setup(authorization: str = Header(None)):
    """
    Begin 2FA enrollment for the signed-in user.

    Returns the secret, provisioning URI, QR code and recovery codes. They are
    shown once; 2FA is not active until /mfa/verify accepts a code.
    """
    try:
        user = require_auth(authorization)
        data = setup_mfa(user)
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(user, "MFA_SETUP_INIT", "MFA setup initiated")
    return data


@app.post("/mfa/verify")
def mfa_verify(req: MFAVerifyReq, request: Request, authorization: str = Header(None)):
    try:
        user = require_auth(authorization)
        _rate_limited(request, user, enable_mfa, user, req.code)
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(user, "MFA_ENABLED", "MFA enabled")
    return {"ok": True, "message": "MFA enabled successfully"}


@app.post("/mfa/disable")
def mfa_disable(req: ReauthReq, request: Request, authorization: str = Header(None)):
    """Turn 2FA off. The password (and a current code) must be re-entered."""
    try:
        user = require_auth(authorization)
        _rate_limited(request, user, disable_mfa, user, req.to_credential())
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(user, "MFA_DISABLED", "MFA disabled")
    return {"ok": True, "message": "MFA disabled successfully"}


@app.post("/mfa/recovery-codes/regenerate")
def mfa_regenerate_codes(req: ReauthReq, request: Request, authorization: str = Header(None)):
    try:
        user = require_auth(authorization)
        codes = _rate_limited(request, user, regenerate_recovery_codes, user, req.to_credential())
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(user, "RECOVERY_CODES_REGENERATED", f"{len(codes)} recovery codes issued")
    return {"recovery_codes": codes}


# ══════════════════════════════════════════════════════════════════════════════
# Database administration endpoints  (system administrators only)
# ══════════════════════════════════════════════════════════════════════════════

@app.post("/admin/database/export")
def database_export(req: ExportReq, request: Request, authorization: str = Header(None)):
    """
    Export the whole dataset.

    Returns the artifact itself: JSON when no files are included, a ZIP
    archive otherwise, encrypted when backup_password is set (which also
    requires re-entering the administrator's credentials).
    """
    actor = _admin(authorization)["username"]
    options = ExportOptions(
        password=req.backup_password or None,
        include_attachments=req.include_attachments,
        include_avatars=req.include_avatars,
    )
    credential = req.credential.to_credential() if req.credential else None

    try:
        artifact = _rate_limited(request, actor, export_database, actor, options, credential)
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(
        actor, "DATABASE_EXPORT",
        f"{artifact.filename} (encrypted={artifact.encrypted}, "
        f"attachments={options.include_attachments}, avatars={options.include_avatars})",
    )
    return Response(
        content=artifact.content,
        media_type=artifact.content_type,
        headers={"Content-Disposition": f'attachment; filename="{artifact.filename}"'},
    )


@app.post("/admin/database/preview")
def database_preview(req: PreviewReq, authorization: str = Header(None)):
    """Decrypt, unpack and validate a backup and report what it holds. Changes nothing."""
    actor = _admin(authorization)["username"]
    artifact = _decode_artifact(req.artifact)

    try:
        preview = preview_backup(artifact, req.decryption_password)
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(actor, "DATABASE_PREVIEW", f"Previewed backup exported at {preview['exportedAt']}")
    return preview


@app.post("/admin/database/import")
def database_import(req: ImportReq, request: Request, authorization: str = Header(None)):
    """
    Replace ALL data with the contents of a backup.

    Irreversible. Requires the administrator's password (and code if 2FA is
    on) and the confirmation text "DELETE ALL DATA". Every session, including
    the caller's, is ended on success.
    """
    actor = _admin(authorization)["username"]
    artifact = _decode_artifact(req.artifact)
    coordinator = RestoreCoordinator()

    try:
        result = _rate_limited(
            request, actor, coordinator.restore, artifact,
            actor=actor,
            credential=req.credential.to_credential(),
            confirm_text=req.confirm_text,
            decryption_password=req.decryption_password,
        )
    except (ValidationError, DecryptionError, FatalRestoreError) as e:
        log_action(actor, "DATABASE_IMPORT_FAILED", f"{type(e).__name__}: {e}")
        raise _http_error(e)
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(
        actor, "DATABASE_IMPORT",
        f"Restored {sum(result.counts.values())} rows; "
        f"{len(result.files.missing_files)} file(s) missing",
    )
    return {"ok": True, **result.to_dict()}


@app.post("/admin/database/wipe")
def database_wipe(req: WipeReq, request: Request, authorization: str = Header(None)):
    """
    Delete EVERYTHING and create one new administrator account.

    Requires the confirmation text "WIPE ALL DATA". Uploaded files stay on
    storage, unreferenced; the response says so.
    """
    actor = _admin(authorization)["username"]

    try:
        outcome = _rate_limited(
            request, actor, wipe_all,
            actor, req.credential.to_credential(), req.confirm_text,
            req.new_admin_username, req.new_admin_password,
        )
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(actor, "DATABASE_WIPE", f"New administrator: {outcome['admin']['username']}")
    return {"ok": True, **outcome}


@app.post("/admin/database/wipe-projects")
def database_wipe_projects(req: WipeProjectsReq, request: Request, authorization: str = Header(None)):
    """Delete all projects and everything in them. Users and settings stay."""
    actor = _admin(authorization)["username"]

    try:
        counts = _rate_limited(
            request, actor, wipe_projects,
            actor, req.credential.to_credential(), req.confirm_text,
        )
    except TicketVaultError as e:
        raise _http_error(e)

    log_action(actor, "DATABASE_WIPE_PROJECTS", f"Deleted {counts['projects']} projects, {counts['tickets']} tickets")
    return {"ok": True, "deleted": counts}


# ══════════════════════════════════════════════════════════════════════════════
# Audit log endpoint
# ══════════════════════════════════════════════════════════════════════════════

@app.get("/logs")
def audit_logs(authorization: str = Header(None)):
    """Audit records, newest first. Administrators see everyone's; others their own."""
    try:
        username = require_auth(authorization)
    except TicketVaultError as e:
        raise _http_error(e)

    user = get_user(username)
    if user and user["is_system_admin"]:
        return {"logs": get_logs()}
    return {"logs": get_logs(username)}
