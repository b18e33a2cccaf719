"""
Installation orchestrator: the wizard's step state machine.

Every mutating request arrives through ``perform()``. The CSRF token is
checked before anything else, the payload is parsed into a typed action,
the action's gating flag is re-verified server side, and only then does a
component run. Component errors are converted into response payloads
here and nowhere else.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from ..installer.admin import AdminRegistrar, build_password_hasher
from ..installer.config_generator import ConfigurationGenerator
from ..installer.database import DatabaseProvisioner, create_mysql_engine
from ..installer.environment import INSTALL_MARKER, EnvironmentQualifier
from ..installer.errors import (
    ConflictError,
    ConnectivityError,
    CsrfError,
    InstallerError,
    PermissionDeniedError,
    StepOrderError,
    StorageError,
    UnknownActionError,
    ValidationError,
)
from ..installer.files import atomic_write, install_lock
from ..installer.schemas import DatabaseCredentials
from ..shared.config import InstallerSettings, dump_yaml
from ..shared.observability import ServiceObservability
from .models import (
    CheckEnvironmentAction,
    CompleteInstallationAction,
    CreateAdminAction,
    DatabaseTestAction,
    InstallationSession,
    InstallDatabaseAction,
    InstallStep,
    InstallSystemAction,
    IntelligentDatabaseSetupAction,
    NextStepAction,
    PreviousStepAction,
    install_action_adapter,
)
from .session_store import SessionStore

logger = logging.getLogger(__name__)

CLEANUP_MARKER = Path(".installation_cleanup_required")
INSTALL_LOCK = Path("config") / ".install.lock"

_UNKNOWN_ACTION_ERRORS = {"union_tag_invalid", "union_tag_not_found"}


@dataclass
class ActionOutcome:
    """What the HTTP layer needs to answer one action request."""

    body: Dict[str, Any]
    status_code: int = 200
    session_token: Optional[str] = None
    session_cleared: bool = False


@dataclass
class _Dispatch:
    body: Dict[str, Any]
    rotate_token: bool = False
    clear_session: bool = False


def _failure(exc: InstallerError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": exc.message, "error": exc.kind}
    if isinstance(exc, (StorageError, PermissionDeniedError)) and exc.path:
        body["path"] = exc.path
    if isinstance(exc, StorageError) and exc.table:
        body["table"] = exc.table
    return body


def _log_failure(action: str, exc: InstallerError) -> None:
    if isinstance(exc, StorageError):
        logger.error("Action %s failed: %s", action, exc.message)
    elif isinstance(exc, (ConnectivityError, PermissionDeniedError)):
        logger.warning("Action %s failed: %s", action, exc.message)
    else:
        logger.info("Action %s rejected: %s", action, exc.message)


class InstallationOrchestrator:
    """Sequences qualification, provisioning, admin creation and config generation."""

    def __init__(
        self,
        settings: InstallerSettings,
        store: SessionStore,
        observability: ServiceObservability,
        *,
        qualifier: Optional[EnvironmentQualifier] = None,
        provisioner: Optional[DatabaseProvisioner] = None,
        registrar: Optional[AdminRegistrar] = None,
        generator: Optional[ConfigurationGenerator] = None,
        engine_factory: Callable[..., Any] = create_mysql_engine,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.settings = settings
        self.store = store
        self.observability = observability
        self.install_root = Path(settings.install_root)
        self.qualifier = qualifier or EnvironmentQualifier(settings)
        self.provisioner = provisioner or DatabaseProvisioner(
            connect_timeout=settings.database_connect_timeout_seconds
        )
        self.registrar = registrar or AdminRegistrar(
            build_password_hasher(
                settings.password_time_cost,
                settings.password_memory_cost,
                settings.password_parallelism,
            )
        )
        self.generator = generator or ConfigurationGenerator(settings)
        self.engine_factory = engine_factory
        self.clock = clock

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    @property
    def installed(self) -> bool:
        return (self.install_root / INSTALL_MARKER).exists()

    def new_session(self) -> InstallationSession:
        session = InstallationSession(
            token=secrets.token_urlsafe(32),
            csrf_token=secrets.token_urlsafe(32),
        )
        self.store.save(session.token, session)
        logger.info("Started installation session")
        return session

    def resume_session(self, token: Optional[str]) -> InstallationSession:
        """Load the session for ``token`` or start a fresh one."""
        if token:
            session = self.store.load(token)
            if session is not None:
                return session
        return self.new_session()

    def _rotate(self, session: InstallationSession) -> None:
        old_token = session.token
        session.token = secrets.token_urlsafe(32)
        self.store.delete(old_token)
        logger.info("Rotated installation session token")

    def _persist(self, session: InstallationSession) -> None:
        session.updated_at = datetime.utcnow()
        self.store.save(session.token, session)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def perform(self, token: Optional[str], payload: Mapping[str, Any]) -> ActionOutcome:
        """Authenticate, parse, gate and run one wizard action."""
        action_name = str(payload.get("action") or "unknown")
        session = self.store.load(token) if token else None

        try:
            self._verify_csrf(session, payload.get("csrf_token"))
            action = self._parse(payload)
        except InstallerError as exc:
            _log_failure(action_name, exc)
            self.observability.log_event("warning", "Installer action rejected", {"action": action_name, "error": exc.kind})
            return ActionOutcome(body=_failure(exc), status_code=exc.http_status)

        with self.observability.trace_action(action_name, session.token) as trace:
            try:
                if self.installed:
                    raise ConflictError("Installation already completed")
                dispatch = self._dispatch(session, action)
            except InstallerError as exc:
                trace.fail(exc.kind)
                _log_failure(action_name, exc)
                self.observability.log_event("info", "Installer action failed", {"action": action_name, "error": exc.kind})
                self._persist(session)
                return ActionOutcome(body=_failure(exc), status_code=exc.http_status, session_token=session.token)

            if dispatch.clear_session:
                self.store.delete(session.token)
                self.observability.log_event("info", "Installation completed", {"action": action_name})
                return ActionOutcome(body=dispatch.body, session_cleared=True)

            if dispatch.rotate_token:
                self._rotate(session)
            self._persist(session)
            trace.note("step", int(session.current_step))
            self.observability.log_event(
                "info",
                "Installer action handled",
                {"action": action_name, "success": dispatch.body.get("success"), "step": int(session.current_step)},
            )
            return ActionOutcome(body=dispatch.body, session_token=session.token)

    def _verify_csrf(self, session: Optional[InstallationSession], submitted: Any) -> None:
        if session is None:
            raise CsrfError("Installation session expired; reload the installer")
        if not isinstance(submitted, str) or not hmac.compare_digest(submitted, session.csrf_token):
            raise CsrfError("Invalid security token")

    def _parse(self, payload: Mapping[str, Any]):
        try:
            return install_action_adapter.validate_python(dict(payload))
        except PydanticValidationError as exc:
            errors = exc.errors()
            if any(err["type"] in _UNKNOWN_ACTION_ERRORS for err in errors):
                raise UnknownActionError(f"Unknown action: {payload.get('action')!r}") from exc
            first = errors[0]
            location = ".".join(str(part) for part in first["loc"][1:]) or "request"
            raise ValidationError(f"Invalid {location}: {first['msg']}") from exc

    def _dispatch(self, session: InstallationSession, action) -> _Dispatch:
        match action:
            case CheckEnvironmentAction():
                return self._check_environment(session)
            case IntelligentDatabaseSetupAction():
                return self._intelligent_database_setup(session, action)
            case DatabaseTestAction():
                return self._test_database(session, action)
            case InstallDatabaseAction():
                return self._install_database(session, action)
            case CreateAdminAction():
                return self._create_admin(session, action)
            case InstallSystemAction():
                return self._install_system(session)
            case CompleteInstallationAction():
                return self._complete_installation(session)
            case NextStepAction():
                return self._next_step(session, action)
            case PreviousStepAction():
                return self._previous_step(session, action)
            case _:
                raise UnknownActionError(f"Unknown action: {type(action).__name__}")

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    @staticmethod
    def _require(session: InstallationSession, flag: str, message: str) -> None:
        if not getattr(session, flag):
            raise StepOrderError(message)

    def _require_database_editable(self, session: InstallationSession) -> None:
        self._require(session, "environment_checked", "Run the environment check first")
        if session.admin_created:
            raise StepOrderError("The database cannot be changed after the administrator account is created")

    def _accept_credentials(self, session: InstallationSession, credentials: DatabaseCredentials) -> bool:
        """Store accepted credentials; True when this is the first acceptance.

        Once tables exist the report-only actions stop calling this, so the
        configured database is always the one ``install_database`` built.
        """
        first = session.database_config is None
        session.database_config = credentials
        return first

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _check_environment(self, session: InstallationSession) -> _Dispatch:
        report = self.qualifier.run_qualification()
        if report.qualified:
            session.mark("environment_checked")
        body: Dict[str, Any] = {
            "success": report.qualified,
            "web_root": str(self.install_root),
            "environment": report.model_dump(mode="json"),
            "can_proceed": report.qualified,
        }
        if not report.qualified:
            failed = [name for name, check in report.checks.items() if check.critical and not check.status]
            body["message"] = "Environment requirements not met: " + ", ".join(failed)
        return _Dispatch(body)

    def _intelligent_database_setup(
        self, session: InstallationSession, action: IntelligentDatabaseSetupAction
    ) -> _Dispatch:
        self._require_database_editable(session)
        credentials = action.credentials(self.settings.default_database_host, self.settings.default_database_port)
        result = self.provisioner.provision(credentials, credentials.name)

        body: Dict[str, Any] = {"success": result.final_database is not None, **result.model_dump()}
        body["message"] = result.messages[-1] if result.messages else ""
        rotate = False
        if result.final_database and not session.tables_created:
            rotate = self._accept_credentials(session, credentials.with_database(result.final_database))
        return _Dispatch(body, rotate_token=rotate)

    def _test_database(self, session: InstallationSession, action: DatabaseTestAction) -> _Dispatch:
        self._require_database_editable(session)
        credentials = action.credentials(self.settings.default_database_host, self.settings.default_database_port)
        result = self.provisioner.test_connection(credentials)
        rotate = False
        if result.success and credentials.name and not session.tables_created:
            rotate = self._accept_credentials(session, credentials)
        return _Dispatch(result.model_dump(), rotate_token=rotate)

    def _install_database(self, session: InstallationSession, action: InstallDatabaseAction) -> _Dispatch:
        self._require_database_editable(session)
        credentials = action.credentials(self.settings.default_database_host, self.settings.default_database_port)
        provision = self.provisioner.provision(credentials, credentials.name)
        if not provision.final_database:
            body = {
                "success": False,
                "message": provision.messages[-1] if provision.messages else "Database provisioning failed",
                **provision.model_dump(),
                "schema_installed": False,
                "ready_for_next_step": False,
            }
            return _Dispatch(body)

        target = credentials.with_database(provision.final_database)
        schema = self.provisioner.install_schema(target)
        if not schema.success:
            raise StorageError(schema.message, table=schema.failed_table)

        rotate = self._accept_credentials(session, target)
        session.mark("tables_created")
        body = {
            "success": True,
            "message": schema.message,
            **provision.model_dump(),
            "tables": [t.model_dump() for t in schema.tables],
            "seeded_settings": schema.seeded_settings,
            "schema_installed": True,
            "ready_for_next_step": True,
        }
        return _Dispatch(body, rotate_token=rotate)

    def _create_admin(self, session: InstallationSession, action: CreateAdminAction) -> _Dispatch:
        self._require(session, "tables_created", "Install the database tables before creating the administrator")
        if session.database_config is None:
            raise StepOrderError("No database configured for this installation")

        engine = self.engine_factory(
            session.database_config,
            session.database_config.name,
            connect_timeout=self.settings.database_connect_timeout_seconds,
        )
        try:
            admin = self.registrar.create_admin(
                engine,
                username=action.username or "admin",
                email=action.email or "",
                password=action.password or "",
                confirm_password=action.confirm_password or "",
                first_name=action.first_name or "Site",
                last_name=action.last_name or "Administrator",
            )
        finally:
            engine.dispose()

        session.admin_info = admin
        session.mark("admin_created")
        return _Dispatch(
            {"success": True, "message": "Admin account created successfully", "admin": admin.model_dump()}
        )

    def _install_system(self, session: InstallationSession) -> _Dispatch:
        self._require(session, "admin_created", "Create the administrator account first")
        if session.database_config is None or session.admin_info is None:
            raise StepOrderError("Installation session is missing database or administrator details")

        with install_lock(self.install_root / INSTALL_LOCK):
            artifacts = self.generator.generate(session.database_config, session.admin_info)

        session.config_artifacts = artifacts
        session.mark("config_generated")
        return _Dispatch(
            {
                "success": True,
                "message": "Configuration files generated",
                "admin_url": self.settings.admin_url,
                "contact_form_url": self.settings.contact_form_url,
                "artifacts": [a.model_dump(mode="json") for a in artifacts],
            }
        )

    def _complete_installation(self, session: InstallationSession) -> _Dispatch:
        self._require(session, "config_generated", "Generate the configuration before completing the installation")
        completed_at = self.clock()
        stamp = completed_at.isoformat()

        with install_lock(self.install_root / INSTALL_LOCK):
            atomic_write(self.install_root / INSTALL_MARKER, dump_yaml({"installed_at": stamp}), 0o644)
            atomic_write(self.install_root / CLEANUP_MARKER, f"{int(completed_at.timestamp())}\n", 0o600)

        session.mark("installation_completed")
        logger.info("Installation completed at %s", stamp)
        return _Dispatch(
            {
                "success": True,
                "message": "Installation complete. Security cleanup is required before admin access.",
                "admin_url": self.settings.admin_url,
                "contact_form_url": self.settings.contact_form_url,
                "completion_time": stamp,
                "redirect": "/cleanup",
            },
            clear_session=True,
        )

    def _next_step(self, session: InstallationSession, action: NextStepAction) -> _Dispatch:
        requested = action.step if action.step is not None else int(session.current_step) + 1
        try:
            target = InstallStep(requested)
        except ValueError as exc:
            raise ValidationError(f"No such step: {requested}") from exc
        if not session.can_enter(target):
            raise StepOrderError(f"Step {int(target)} is not available yet")
        session.current_step = target
        return _Dispatch({"success": True, "current_step": int(target), "step_name": target.name.lower()})

    def _previous_step(self, session: InstallationSession, action: PreviousStepAction) -> _Dispatch:
        current = int(session.current_step)
        requested = action.step if action.step is not None else current - 1
        if requested > current:
            raise StepOrderError("Use next_step to move forward")
        target = InstallStep(max(requested, int(InstallStep.ENVIRONMENT_CHECK)))
        session.current_step = target
        return _Dispatch({"success": True, "current_step": int(target), "step_name": target.name.lower()})
