"""
Contact form installation HTTP service.

Serves the installation wizard's state and action endpoints, and the
post-install cleanup gate that keeps the admin area closed until the
installer has been disabled.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..installer.errors import InstallerError
from ..shared import (
    HealthChecker,
    HealthStatus,
    InstallerSettings,
    ServiceObservability,
    configure_logging,
    get_settings,
    init_observability,
)
from .cleanup import CleanupGate
from .orchestrator import ActionOutcome, InstallationOrchestrator
from .session_store import SessionStore, create_session_store

logger = logging.getLogger(__name__)

GONE_MESSAGE = "The installer has been disabled after a completed installation."


class InstallerService:
    """Wires settings, session storage, the orchestrator and the cleanup gate."""

    def __init__(
        self,
        settings: Optional[InstallerSettings] = None,
        *,
        store: Optional[SessionStore] = None,
        orchestrator: Optional[InstallationOrchestrator] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.observability: ServiceObservability = init_observability(self.settings)
        self.health_checker = HealthChecker(self.settings.service_name, self.settings.service_version)
        self.store = store or create_session_store(self.settings)
        self.orchestrator = orchestrator or InstallationOrchestrator(self.settings, self.store, self.observability)
        self.cleanup_gate = CleanupGate(self.settings.install_root)

        self._register_health_checks()

    def _register_health_checks(self) -> None:
        self.health_checker.register("liveness", lambda: (True, "Service running"), critical=True)
        self.health_checker.register("session_store", self.store.ping)
        self.health_checker.register("install_root", self._install_root_writable)

    def _install_root_writable(self) -> Tuple[bool, str]:
        root = self.settings.install_root
        if not root.is_dir():
            return False, f"{root} does not exist"
        if not os.access(root, os.W_OK | os.X_OK):
            return False, f"{root} is not writable"
        return True, str(root)

    def set_session_cookie(self, response: JSONResponse, token: str) -> None:
        response.set_cookie(
            self.settings.session_cookie_name,
            token,
            max_age=self.settings.session_ttl_seconds,
            httponly=True,
            samesite="strict",
            secure=self.settings.site_url.startswith("https://"),
        )

    def action_response(self, outcome: ActionOutcome, current_token: Optional[str]) -> JSONResponse:
        response = JSONResponse(outcome.body, status_code=outcome.status_code)
        if outcome.session_cleared:
            response.delete_cookie(self.settings.session_cookie_name)
        elif outcome.session_token and outcome.session_token != current_token:
            self.set_session_cookie(response, outcome.session_token)
        return response


def _gone() -> JSONResponse:
    return JSONResponse({"success": False, "message": GONE_MESSAGE, "error": "installer_disabled"}, status_code=410)


async def _read_payload(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        data = await request.json()
        if not isinstance(data, dict):
            raise ValueError("JSON body must be an object")
        return data
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def create_app(
    settings: Optional[InstallerSettings] = None,
    *,
    store: Optional[SessionStore] = None,
    orchestrator: Optional[InstallationOrchestrator] = None,
) -> FastAPI:
    """Build the FastAPI application around one ``InstallerService``."""
    service = InstallerService(settings, store=store, orchestrator=orchestrator)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info("Installer service started (install root %s)", service.settings.install_root)
        yield
        logger.info("Installer service stopped")

    app = FastAPI(title="Contact Form Installer", version=service.settings.service_version, lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(InstallerError)
    async def installer_error_handler(_: Request, exc: InstallerError) -> JSONResponse:
        return JSONResponse(
            {"success": False, "message": exc.message, "error": exc.kind},
            status_code=exc.http_status,
        )

    @app.get("/")
    def root() -> JSONResponse:
        return JSONResponse(
            {
                "service": "Contact Form Installer",
                "version": service.settings.service_version,
                "status": "running",
                "installed": service.cleanup_gate.installed,
            }
        )

    @app.get("/health")
    def health() -> JSONResponse:
        report = service.health_checker.report()
        status_code = 503 if report.status == HealthStatus.UNHEALTHY else 200
        return JSONResponse(report.model_dump(mode="json"), status_code=status_code)

    @app.get("/install/state")
    def install_state(request: Request) -> JSONResponse:
        gate = service.cleanup_gate
        if gate.installer_disabled:
            return _gone()
        if gate.installed:
            return JSONResponse({"installed": True, **gate.status(), "redirect": "/cleanup"})

        token = request.cookies.get(service.settings.session_cookie_name)
        session = service.orchestrator.resume_session(token)
        response = JSONResponse({"installed": False, **session.public_state()})
        if session.token != token:
            service.set_session_cookie(response, session.token)
        return response

    @app.post("/install/action")
    async def install_action(request: Request) -> JSONResponse:
        if service.cleanup_gate.installer_disabled:
            return _gone()
        try:
            payload = await _read_payload(request)
        except ValueError as exc:
            return JSONResponse(
                {"success": False, "message": f"Malformed request body: {exc}", "error": "validation_error"},
                status_code=400,
            )

        token = request.cookies.get(service.settings.session_cookie_name)
        outcome = await run_in_threadpool(service.orchestrator.perform, token, payload)
        return service.action_response(outcome, token)

    @app.get("/admin")
    @app.get("/admin/{path:path}")
    def admin(path: str = "") -> JSONResponse:
        gate = service.cleanup_gate
        if gate.admin_blocked:
            return JSONResponse(
                {
                    "success": False,
                    "message": "Admin access is blocked until security cleanup is completed.",
                    "error": "cleanup_required",
                    "redirect": "/cleanup",
                },
                status_code=423,
            )
        if not gate.installed:
            return JSONResponse(
                {
                    "success": False,
                    "message": "Installation has not been completed.",
                    "error": "not_installed",
                    "redirect": "/install/state",
                },
                status_code=409,
            )
        return JSONResponse({"success": True, "message": "Admin area available", "path": f"/admin/{path}"})

    @app.get("/cleanup")
    def cleanup_status() -> JSONResponse:
        return JSONResponse(service.cleanup_gate.status())

    @app.post("/cleanup/acknowledge")
    def cleanup_acknowledge() -> JSONResponse:
        result = service.cleanup_gate.acknowledge()
        service.observability.log_event("info", "Security cleanup acknowledged", {"installer_disabled": True})
        return JSONResponse(result)

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.log_level)
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(create_app(settings), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
