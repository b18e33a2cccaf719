"""
Pydantic models for installation sessions and wizard action payloads.
"""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, field_validator

from ..installer.schemas import AdminInfo, ConfigArtifactResult, DatabaseCredentials


class InstallStep(IntEnum):
    """Wizard steps, in order."""

    ENVIRONMENT_CHECK = 1
    DATABASE_SETUP = 2
    ADMIN_ACCOUNT = 3
    CONFIG_GENERATION = 4
    SECURITY_CLEANUP = 5


# Flag that must be true before a step may be entered.
STEP_PREREQUISITES = {
    InstallStep.ENVIRONMENT_CHECK: None,
    InstallStep.DATABASE_SETUP: "environment_checked",
    InstallStep.ADMIN_ACCOUNT: "tables_created",
    InstallStep.CONFIG_GENERATION: "admin_created",
    InstallStep.SECURITY_CLEANUP: "config_generated",
}

# Each progress flag and the flag it depends on.
FLAG_PREREQUISITES = {
    "environment_checked": None,
    "tables_created": "environment_checked",
    "admin_created": "tables_created",
    "config_generated": "admin_created",
    "installation_completed": "config_generated",
}


class InstallationSession(BaseModel):
    """Server-side state of one installation attempt."""

    token: str
    csrf_token: str
    current_step: InstallStep = InstallStep.ENVIRONMENT_CHECK
    database_config: Optional[DatabaseCredentials] = None
    admin_info: Optional[AdminInfo] = None
    config_artifacts: List[ConfigArtifactResult] = Field(default_factory=list)
    environment_checked: bool = False
    tables_created: bool = False
    admin_created: bool = False
    config_generated: bool = False
    installation_completed: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def mark(self, flag: str) -> None:
        """Set a progress flag. Flags only ever go from false to true.

        Raises:
            ValueError: The flag's prerequisite is not set
        """
        prerequisite = FLAG_PREREQUISITES[flag]
        if prerequisite and not getattr(self, prerequisite):
            raise ValueError(f"{flag} requires {prerequisite}")
        setattr(self, flag, True)

    def can_enter(self, step: InstallStep) -> bool:
        return all(
            getattr(self, flag)
            for candidate, flag in STEP_PREREQUISITES.items()
            if flag and candidate <= step
        )

    def public_state(self) -> dict:
        """State safe to hand to the browser (no database password)."""
        return {
            "current_step": int(self.current_step),
            "step_name": self.current_step.name.lower(),
            "csrf_token": self.csrf_token,
            "environment_checked": self.environment_checked,
            "tables_created": self.tables_created,
            "admin_created": self.admin_created,
            "config_generated": self.config_generated,
            "installation_completed": self.installation_completed,
            "database": self.database_config.model_dump(exclude={"password"}) if self.database_config else None,
            "admin": self.admin_info.model_dump() if self.admin_info else None,
            "config_artifacts": [a.model_dump(mode="json") for a in self.config_artifacts],
        }


def _blank_to_none(value):
    # HTML forms submit untouched optional inputs as empty strings
    if isinstance(value, str) and not value.strip():
        return None
    return value


class ActionBase(BaseModel):
    csrf_token: str = ""


class DatabaseFields(ActionBase):
    """Connection fields; accepts the installer form's ``db_*`` names too."""

    host: Optional[str] = Field(None, validation_alias=AliasChoices("host", "db_host"))
    port: Optional[int] = Field(None, ge=1, le=65535, validation_alias=AliasChoices("port", "db_port"))
    user: str = Field(..., min_length=1, validation_alias=AliasChoices("user", "db_user", "db_username"))
    password: str = Field("", validation_alias=AliasChoices("password", "pass", "db_pass", "db_password"))
    name: Optional[str] = Field(None, validation_alias=AliasChoices("name", "db_name"))

    _optional_fields = field_validator("host", "port", "name", mode="before")(_blank_to_none)

    def credentials(self, default_host: str, default_port: int) -> DatabaseCredentials:
        return DatabaseCredentials(
            host=(self.host or "").strip() or default_host,
            port=self.port or default_port,
            user=self.user.strip(),
            password=self.password,
            name=(self.name or "").strip() or None,
        )


class CheckEnvironmentAction(ActionBase):
    action: Literal["check_environment"]


class IntelligentDatabaseSetupAction(DatabaseFields):
    action: Literal["intelligent_database_setup"]


class DatabaseTestAction(DatabaseFields):
    action: Literal["test_database"]


class InstallDatabaseAction(DatabaseFields):
    action: Literal["install_database"]


class CreateAdminAction(ActionBase):
    action: Literal["create_admin"]
    email: str = ""
    password: str = ""
    confirm_password: str = ""
    username: str = "admin"
    first_name: str = "Site"
    last_name: str = "Administrator"


class InstallSystemAction(ActionBase):
    action: Literal["install_system"]


class CompleteInstallationAction(ActionBase):
    action: Literal["complete_installation"]


class NextStepAction(ActionBase):
    action: Literal["next_step"]
    step: Optional[int] = None

    _optional_step = field_validator("step", mode="before")(_blank_to_none)


class PreviousStepAction(ActionBase):
    action: Literal["previous_step", "prev_step"]
    step: Optional[int] = None

    _optional_step = field_validator("step", mode="before")(_blank_to_none)


InstallAction = Annotated[
    Union[
        CheckEnvironmentAction,
        IntelligentDatabaseSetupAction,
        DatabaseTestAction,
        InstallDatabaseAction,
        CreateAdminAction,
        InstallSystemAction,
        CompleteInstallationAction,
        NextStepAction,
        PreviousStepAction,
    ],
    Field(discriminator="action"),
]

install_action_adapter: TypeAdapter[InstallAction] = TypeAdapter(InstallAction)
