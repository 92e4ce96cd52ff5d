"""
Tests for the headless destructive-operation wizard.
"""

import pyotp
import pytest

from tests.conftest import ADMIN_PASSWORD
from ticketvault.errors import AuthError, SecondFactorRequired, ValidationError
from ticketvault.wipe import wipe_projects
from ticketvault.wizard import DestructiveWizard, OperationKind, WizardStep


pytestmark = pytest.mark.security


def _walk_to_credentials(wizard):
    assert wizard.can_advance() is False
    wizard.acknowledge()
    assert wizard.advance() is WizardStep.CREDENTIALS


class TestGuards:

    def test_warning_must_be_acknowledged(self):
        wizard = DestructiveWizard(OperationKind.IMPORT, "admin", mfa_probe=lambda _: False)
        with pytest.raises(ValidationError):
            wizard.advance()
        assert wizard.step is WizardStep.WARNING

    def test_password_required(self):
        wizard = DestructiveWizard(OperationKind.IMPORT, "admin", mfa_probe=lambda _: False)
        _walk_to_credentials(wizard)
        assert wizard.can_advance() is False
        wizard.enter_password("pw")
        assert wizard.can_advance() is True

    @pytest.mark.parametrize("kind,phrase", [
        (OperationKind.IMPORT, "DELETE ALL DATA"),
        (OperationKind.WIPE_ALL, "WIPE ALL DATA"),
        (OperationKind.WIPE_PROJECTS, "DELETE ALL PROJECTS"),
    ])
    def test_confirmation_phrase_per_operation(self, kind, phrase):
        wizard = DestructiveWizard(kind, "admin", mfa_probe=lambda _: False)
        _walk_to_credentials(wizard)
        wizard.enter_password("pw")
        assert wizard.advance() is WizardStep.CONFIRMATION

        wizard.type_confirmation(phrase.lower())
        assert wizard.can_advance() is False
        wizard.type_confirmation(phrase)
        assert wizard.can_advance() is True
        assert wizard.advance() is WizardStep.RUNNING

    def test_run_requires_running_step(self):
        wizard = DestructiveWizard(OperationKind.IMPORT, "admin", mfa_probe=lambda _: False)
        with pytest.raises(ValidationError):
            wizard.run(lambda credential, text: None)


class TestSecondFactorProbe:

    def test_step_skipped_when_account_has_no_second_factor(self):
        wizard = DestructiveWizard(OperationKind.IMPORT, "admin", mfa_probe=lambda _: False)
        _walk_to_credentials(wizard)
        wizard.enter_password("pw")
        assert wizard.advance() is WizardStep.CONFIRMATION
        assert wizard.requires_second_factor is False

    def test_step_shown_when_account_has_second_factor(self):
        probed = []
        wizard = DestructiveWizard(OperationKind.IMPORT, "admin", mfa_probe=lambda u: probed.append(u) or True)
        _walk_to_credentials(wizard)
        wizard.enter_password("pw")
        assert wizard.advance() is WizardStep.SECOND_FACTOR
        assert probed == ["admin"]

        assert wizard.can_advance() is False
        wizard.enter_code("123456")
        assert wizard.advance() is WizardStep.CONFIRMATION
        assert wizard.back() is WizardStep.SECOND_FACTOR

    def test_probe_uses_live_account_state(self, admin_2fa):
        wizard = DestructiveWizard(OperationKind.WIPE_PROJECTS, "admin")
        _walk_to_credentials(wizard)
        wizard.enter_password(ADMIN_PASSWORD)
        assert wizard.advance() is WizardStep.SECOND_FACTOR


class TestRun:

    def _ready(self, wizard, password, phrase):
        _walk_to_credentials(wizard)
        wizard.enter_password(password)
        wizard.advance()
        if wizard.step is WizardStep.SECOND_FACTOR:
            return
        wizard.type_confirmation(phrase)
        wizard.advance()

    def test_successful_run(self, seeded):
        wizard = DestructiveWizard(OperationKind.WIPE_PROJECTS, "admin")
        self._ready(wizard, ADMIN_PASSWORD, "DELETE ALL PROJECTS")

        result = wizard.run(lambda credential, text: wipe_projects("admin", credential, text))

        assert result == {"projects": 2, "tickets": 3}
        assert wizard.step is WizardStep.DONE
        assert wizard.password is None

    def test_failed_run(self, seeded):
        wizard = DestructiveWizard(OperationKind.WIPE_PROJECTS, "admin")
        self._ready(wizard, "wrong password", "DELETE ALL PROJECTS")

        with pytest.raises(AuthError):
            wizard.run(lambda credential, text: wipe_projects("admin", credential, text))
        assert wizard.step is WizardStep.FAILED
        assert isinstance(wizard.error, AuthError)
        assert wizard.password is None

    def test_late_second_factor_goes_back_to_code_step(self, seeded):
        wizard = DestructiveWizard(OperationKind.WIPE_PROJECTS, "admin", mfa_probe=lambda _: False)
        self._ready(wizard, ADMIN_PASSWORD, "DELETE ALL PROJECTS")

        def needs_code(credential, text):
            raise SecondFactorRequired("Two-factor code required")

        with pytest.raises(SecondFactorRequired):
            wizard.run(needs_code)
        assert wizard.step is WizardStep.SECOND_FACTOR
        assert wizard.password == ADMIN_PASSWORD

    def test_run_with_totp(self, admin_2fa):
        wizard = DestructiveWizard(OperationKind.WIPE_PROJECTS, "admin")
        self._ready(wizard, ADMIN_PASSWORD, "DELETE ALL PROJECTS")
        assert wizard.step is WizardStep.SECOND_FACTOR

        wizard.enter_code(pyotp.TOTP(admin_2fa["secret"]).now())
        wizard.advance()
        wizard.type_confirmation("DELETE ALL PROJECTS")
        wizard.advance()

        assert wizard.run(lambda credential, text: wipe_projects("admin", credential, text))["projects"] == 2
