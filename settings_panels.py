from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from entitlements import EntitlementQuery
from plans import PlanTier
from upgrade_prompt import PromptOptions, UpgradePrompt, render_upgrade_prompt

SECURITY = "security"
PRIVACY = "privacy"

DELETE_WARNING = (
    "Deleting your account is permanent. Your profile, subscription details and "
    "CRM data will be removed and cannot be recovered."
)


class ConfirmationRequiredError(RuntimeError):
    pass


@dataclass(frozen=True)
class AccountAction:
    key: str
    title: str
    description: str
    button_label: str
    required_plan: PlanTier = PlanTier.FREE
    destructive: bool = False


PANELS = {
    SECURITY: (
        AccountAction(
            key="enable_two_factor",
            title="Two-Factor Authentication",
            description="Add an extra layer of security",
            button_label="Enable 2FA",
        ),
        AccountAction(
            key="sign_out_all",
            title="Login Sessions",
            description="Manage active sessions",
            button_label="Sign Out All Devices",
            destructive=True,
        ),
    ),
    PRIVACY: (
        AccountAction(
            key="data_export",
            title="Export Data",
            description="Download a copy of your account data for backup or migration.",
            button_label="Export",
            required_plan=PlanTier.STARTER,
        ),
        AccountAction(
            key="delete_account",
            title="Delete Account",
            description="Permanently remove your account and all associated data.",
            button_label="Delete Account",
            destructive=True,
        ),
    ),
}


def panel_entries(
    panel: str,
    current_plan,
    on_upgrade: Callable[[str], None],
    options: Optional[PromptOptions] = None,
) -> list[tuple[AccountAction, Optional[UpgradePrompt]]]:
    """Pair each action of ``panel`` with its upgrade prompt (None if available)."""
    entries = []
    for action in PANELS[panel]:
        query = EntitlementQuery(
            current_plan=current_plan,
            required_plan=action.required_plan,
            feature_label=action.title,
        )
        entries.append((action, render_upgrade_prompt(query, on_upgrade, options)))
    return entries


class DeleteState(str, Enum):
    IDLE = "idle"
    CONFIRMATION_SHOWN = "confirmation_shown"
    DELETED = "deleted"


class DeleteAccountFlow:
    """Two-step account deletion.

    idle -> confirmation_shown -> idle (cancel) or deleted (confirm).
    ``on_delete`` only runs from confirm(), and only once.
    """

    def __init__(self, on_delete: Callable[[], None], state: DeleteState = DeleteState.IDLE):
        self.on_delete = on_delete
        self.state = DeleteState(state)

    @property
    def warning(self) -> Optional[str]:
        if self.state is DeleteState.CONFIRMATION_SHOWN:
            return DELETE_WARNING
        return None

    def request(self):
        if self.state is DeleteState.DELETED:
            raise ConfirmationRequiredError("account already deleted")
        self.state = DeleteState.CONFIRMATION_SHOWN

    def cancel(self):
        if self.state is DeleteState.CONFIRMATION_SHOWN:
            self.state = DeleteState.IDLE

    def confirm(self):
        if self.state is not DeleteState.CONFIRMATION_SHOWN:
            raise ConfirmationRequiredError(
                f"delete requires confirmation (state: {self.state.value})"
            )
        self.on_delete()
        self.state = DeleteState.DELETED
