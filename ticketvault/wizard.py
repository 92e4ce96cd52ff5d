"""
Headless wizard for destructive operations.

The steps a person goes through before an import or a wipe (read the
warning, re-enter the password, give a second-factor code if the account has
one, type the confirmation phrase) as a state machine with guarded
transitions. A front end only renders `step` and feeds input back in.

Whether the second-factor step appears is decided by asking the
authorization layer when the password step is left, not by always asking.
"""

from enum import Enum
from typing import Any, Callable, Optional

from ticketvault import config
from ticketvault.auth import check_mfa_enabled
from ticketvault.errors import SecondFactorRequired, TicketVaultError, ValidationError
from ticketvault.models import ReauthCredential


class OperationKind(str, Enum):
    IMPORT = "import"
    WIPE_ALL = "wipe_all"
    WIPE_PROJECTS = "wipe_projects"


class WizardStep(str, Enum):
    WARNING = "warning"
    CREDENTIALS = "credentials"
    SECOND_FACTOR = "second_factor"
    CONFIRMATION = "confirmation"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


def required_phrase(kind: OperationKind) -> str:
    return {
        OperationKind.IMPORT: config.IMPORT_CONFIRMATION,
        OperationKind.WIPE_ALL: config.WIPE_CONFIRMATION,
        OperationKind.WIPE_PROJECTS: config.WIPE_PROJECTS_CONFIRMATION,
    }[kind]


class DestructiveWizard:
    def __init__(self, kind: OperationKind, actor: str, mfa_probe: Callable[[str], bool] = check_mfa_enabled):
        self.kind = kind
        self.actor = actor
        self._mfa_probe = mfa_probe

        self.step = WizardStep.WARNING
        self.acknowledged = False
        self.password: Optional[str] = None
        self.totp_code: Optional[str] = None
        self.is_recovery_code = False
        self.confirm_text = ""
        self.requires_second_factor: Optional[bool] = None

        self.result: Any = None
        self.error: Optional[TicketVaultError] = None

    # ── Input ─────────────────────────────────────────────────────────────────
    def acknowledge(self):
        self.acknowledged = True

    def enter_password(self, password: str):
        self.password = password

    def enter_code(self, code: str, is_recovery_code: bool = False):
        self.totp_code = code
        self.is_recovery_code = is_recovery_code

    def type_confirmation(self, text: str):
        self.confirm_text = text

    @property
    def credential(self) -> ReauthCredential:
        return ReauthCredential(self.password or "", self.totp_code, self.is_recovery_code)

    # ── Transitions ───────────────────────────────────────────────────────────
    def can_advance(self) -> bool:
        """True when the current step has everything it needs to move on."""
        if self.step is WizardStep.WARNING:
            return self.acknowledged
        if self.step is WizardStep.CREDENTIALS:
            return bool(self.password)
        if self.step is WizardStep.SECOND_FACTOR:
            return bool(self.totp_code and self.totp_code.strip())
        if self.step is WizardStep.CONFIRMATION:
            return self.confirm_text == required_phrase(self.kind)
        return False

    def advance(self) -> WizardStep:
        if not self.can_advance():
            raise ValidationError(f"Cannot continue from the {self.step.value} step yet")

        if self.step is WizardStep.WARNING:
            self.step = WizardStep.CREDENTIALS
        elif self.step is WizardStep.CREDENTIALS:
            self.requires_second_factor = self._mfa_probe(self.actor)
            self.step = WizardStep.SECOND_FACTOR if self.requires_second_factor else WizardStep.CONFIRMATION
        elif self.step is WizardStep.SECOND_FACTOR:
            self.step = WizardStep.CONFIRMATION
        elif self.step is WizardStep.CONFIRMATION:
            self.step = WizardStep.RUNNING
        return self.step

    def back(self) -> WizardStep:
        if self.step is WizardStep.CONFIRMATION:
            self.step = WizardStep.SECOND_FACTOR if self.requires_second_factor else WizardStep.CREDENTIALS
        elif self.step is WizardStep.SECOND_FACTOR:
            self.step = WizardStep.CREDENTIALS
        elif self.step is WizardStep.CREDENTIALS:
            self.step = WizardStep.WARNING
        return self.step

    # ── Execution ─────────────────────────────────────────────────────────────
    def run(self, operation: Callable[[ReauthCredential, str], Any]) -> Any:
        """
        Execute the operation with the collected credential and phrase.

        If the account turned out to need a code after all, the wizard goes
        back to the second-factor step with the password kept. Any other
        engine error ends in FAILED. Secrets are dropped once the operation
        has finished either way.
        """
        if self.step is not WizardStep.RUNNING:
            raise ValidationError("The wizard is not ready to run")

        try:
            self.result = operation(self.credential, self.confirm_text)
        except SecondFactorRequired:
            self.requires_second_factor = True
            self.step = WizardStep.SECOND_FACTOR
            raise
        except TicketVaultError as e:
            self.error = e
            self.step = WizardStep.FAILED
            self._forget_secrets()
            raise

        self.step = WizardStep.DONE
        self._forget_secrets()
        return self.result

    def _forget_secrets(self):
        self.password = None
        self.totp_code = None
