"""
Unit tests for accounts, sessions, second-factor enrollment and the
authorization gate in front of destructive operations.
"""

import json
import time

import pyotp
import pytest

from tests.conftest import ADMIN_PASSWORD, USER_PASSWORD
from ticketvault.auth import (
    SESSIONS,
    check_mfa_enabled,
    create_initial_admin,
    disable_mfa,
    enable_mfa,
    get_user,
    login_user,
    login_with_mfa,
    reauthenticate,
    regenerate_recovery_codes,
    require_admin,
    require_auth,
    setup_mfa,
    validate_password_strength,
    validate_username,
    verify_confirmation_phrase,
    verify_credentials,
    verify_second_factor,
)
from ticketvault.errors import (
    AuthError,
    PermissionDeniedError,
    SecondFactorRequired,
    ValidationError,
)
from ticketvault.models import ReauthCredential


pytestmark = pytest.mark.auth


class TestInitialSetup:

    def test_creates_first_admin(self):
        user = create_initial_admin("root_admin", ADMIN_PASSWORD)
        assert user["is_system_admin"] is True
        assert "password_hash" not in user
        assert get_user("root_admin")["password_hash"] != ADMIN_PASSWORD

    def test_only_while_no_users_exist(self, seeded):
        with pytest.raises(ValidationError, match="already"):
            create_initial_admin("another", ADMIN_PASSWORD)


class TestInputValidation:

    @pytest.mark.parametrize("password", ["short1A", "alllowercase123", "ALLUPPERCASE123", "NoDigitsHereAtAll"])
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValidationError):
            validate_password_strength(password)

    def test_strong_password_accepted(self):
        validate_password_strength("CorrectHorse9Battery")

    @pytest.mark.parametrize("username", ["ab", "x" * 31, "has space", "semi;colon", ""])
    def test_bad_usernames_rejected(self, username):
        with pytest.raises(ValidationError):
            validate_username(username)

    def test_username_is_nfc_normalised_and_trimmed(self):
        assert validate_username("  new_admin-1 ") == "new_admin-1"


class TestLogin:

    def test_password_login_issues_session(self, seeded):
        token = login_user("admin", ADMIN_PASSWORD)
        assert SESSIONS[token] == "admin"
        assert require_auth(token) == "admin"
        assert get_user("admin")["last_login_at"] is not None

    def test_wrong_password(self, seeded):
        with pytest.raises(AuthError, match="Invalid credentials"):
            login_user("admin", "nope")

    def test_unknown_user(self, seeded):
        with pytest.raises(AuthError, match="Invalid credentials"):
            verify_credentials("ghost", ADMIN_PASSWORD)

    def test_second_factor_required_is_distinct(self, admin_2fa):
        with pytest.raises(SecondFactorRequired) as exc:
            login_user("admin", ADMIN_PASSWORD)
        assert exc.value.requires_2fa is True

    def test_login_with_totp(self, admin_2fa):
        code = pyotp.TOTP(admin_2fa["secret"]).now()
        token = login_with_mfa("admin", ADMIN_PASSWORD, code)
        assert require_auth(token) == "admin"

    def test_require_auth_rejects_unknown_token(self):
        with pytest.raises(AuthError):
            require_auth("not-a-token")

    def test_require_admin(self, seeded):
        admin_token = login_user("admin", ADMIN_PASSWORD)
        bob_token = login_user("bob", USER_PASSWORD)
        assert require_admin(admin_token)["username"] == "admin"
        with pytest.raises(PermissionDeniedError):
            require_admin(bob_token)


class TestSecondFactor:

    def test_enrollment(self, seeded):
        data = setup_mfa("admin")
        assert data["qr_code"].startswith("data:image/png;base64,")
        assert "issuer=TicketVault" in data["provisioning_uri"]
        assert len(data["recovery_codes"]) == 8
        assert all(len(code) == 11 and code[5] == "-" for code in data["recovery_codes"])

        # Not active until a code is verified; secret and codes stored protected
        assert check_mfa_enabled("admin") is False
        stored = get_user("admin")
        assert stored["totp_secret"] != data["secret"]
        assert data["recovery_codes"][0] not in stored["totp_recovery_codes"]

        enable_mfa("admin", pyotp.TOTP(data["secret"]).now())
        assert check_mfa_enabled("admin") is True

    def test_enable_with_wrong_code(self, seeded):
        data = setup_mfa("admin")
        with pytest.raises(AuthError):
            enable_mfa("admin", pyotp.TOTP(data["secret"]).at(0))
        assert check_mfa_enabled("admin") is False

    def test_setup_twice_refused_once_enabled(self, admin_2fa):
        with pytest.raises(ValidationError):
            setup_mfa("admin")

    def test_totp_code_accepted(self, admin_2fa):
        verify_second_factor("admin", pyotp.TOTP(admin_2fa["secret"]).now())

    def test_wrong_totp_code(self, admin_2fa):
        with pytest.raises(AuthError):
            verify_second_factor("admin", pyotp.TOTP(admin_2fa["secret"]).at(0))

    @pytest.mark.parametrize("skew", [-30, 30])
    def test_totp_code_one_step_off_accepted(self, admin_2fa, skew):
        code = pyotp.TOTP(admin_2fa["secret"]).at(time.time() + skew)
        verify_second_factor("admin", code)

    def test_totp_code_beyond_skew_tolerance_rejected(self, admin_2fa):
        code = pyotp.TOTP(admin_2fa["secret"]).at(time.time() - 90)
        with pytest.raises(AuthError):
            verify_second_factor("admin", code)

    def test_recovery_code_is_single_use(self, admin_2fa):
        code = admin_2fa["recovery_codes"][0]
        verify_second_factor("admin", code, is_recovery_code=True)

        hashes = json.loads(get_user("admin")["totp_recovery_codes"])
        assert hashes.count("") == 1

        with pytest.raises(AuthError, match="Invalid recovery code"):
            verify_second_factor("admin", code, is_recovery_code=True)

    def test_recovery_code_format_is_lenient(self, admin_2fa):
        code = admin_2fa["recovery_codes"][1]
        verify_second_factor("admin", code.replace("-", "").lower(), is_recovery_code=True)

    def test_disable_requires_reauthentication(self, admin_2fa):
        with pytest.raises(SecondFactorRequired):
            disable_mfa("admin", ReauthCredential(ADMIN_PASSWORD))

        code = pyotp.TOTP(admin_2fa["secret"]).now()
        disable_mfa("admin", ReauthCredential(ADMIN_PASSWORD, code))
        assert check_mfa_enabled("admin") is False
        assert get_user("admin")["totp_secret"] is None

    def test_regenerate_invalidates_old_codes(self, admin_2fa):
        old_code = admin_2fa["recovery_codes"][0]
        totp = pyotp.TOTP(admin_2fa["secret"]).now()
        new_codes = regenerate_recovery_codes("admin", ReauthCredential(ADMIN_PASSWORD, totp))

        assert len(new_codes) == 8
        with pytest.raises(AuthError):
            verify_second_factor("admin", old_code, is_recovery_code=True)
        verify_second_factor("admin", new_codes[0], is_recovery_code=True)


class TestAuthorizationGate:

    def test_reauthenticate_without_2fa(self, seeded):
        user = reauthenticate("admin", ReauthCredential(ADMIN_PASSWORD))
        assert user["username"] == "admin"

    def test_reauthenticate_wrong_password(self, seeded):
        with pytest.raises(AuthError) as exc:
            reauthenticate("admin", ReauthCredential("wrong"))
        assert not isinstance(exc.value, SecondFactorRequired)

    def test_reauthenticate_asks_for_code_only_when_enabled(self, admin_2fa):
        with pytest.raises(SecondFactorRequired):
            reauthenticate("admin", ReauthCredential(ADMIN_PASSWORD))

        code = pyotp.TOTP(admin_2fa["secret"]).now()
        reauthenticate("admin", ReauthCredential(ADMIN_PASSWORD, code))

    def test_reauthenticate_with_recovery_code(self, admin_2fa):
        code = admin_2fa["recovery_codes"][2]
        reauthenticate("admin", ReauthCredential(ADMIN_PASSWORD, code, is_recovery_code=True))

    def test_wrong_password_does_not_consume_recovery_code(self, admin_2fa):
        code = admin_2fa["recovery_codes"][3]
        with pytest.raises(AuthError):
            reauthenticate("admin", ReauthCredential("wrong", code, is_recovery_code=True))
        reauthenticate("admin", ReauthCredential(ADMIN_PASSWORD, code, is_recovery_code=True))

    @pytest.mark.security
    @pytest.mark.parametrize("typed", ["delete all data", "DELETE ALL DATA ", "DELETE  ALL DATA", ""])
    def test_confirmation_phrase_is_exact(self, typed):
        with pytest.raises(ValidationError):
            verify_confirmation_phrase(typed, "DELETE ALL DATA")

    def test_confirmation_phrase_match(self):
        verify_confirmation_phrase("DELETE ALL DATA", "DELETE ALL DATA")
