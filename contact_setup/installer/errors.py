"""
Error taxonomy shared by the installer components.

Only the orchestrator turns these into user-facing messages; components
raise them (or embed their messages in structured results) and leave the
decision about step flags to the caller.
"""

from __future__ import annotations

from typing import Optional


class InstallerError(Exception):
    """Base class for installer failures."""

    kind = "installer_error"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(InstallerError):
    """User-correctable input problem."""

    kind = "validation_error"
    http_status = 400


class ConflictError(InstallerError):
    """Duplicate identity or a competing installation attempt."""

    kind = "conflict"
    http_status = 409


class ConnectivityError(InstallerError):
    """Network or database endpoint unreachable; the user may retry."""

    kind = "connectivity_error"
    http_status = 503


class PermissionDeniedError(InstallerError):
    """Filesystem or database privilege denial needing operator action."""

    kind = "permission_denied"
    http_status = 403

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class StorageError(InstallerError):
    """A write or schema operation failed; fatal to the current step."""

    kind = "storage_error"
    http_status = 500

    def __init__(self, message: str, *, path: Optional[str] = None, table: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path
        self.table = table


class CsrfError(InstallerError):
    """Submitted CSRF token does not match the session token."""

    kind = "csrf_mismatch"
    http_status = 403


class StepOrderError(InstallerError):
    """An action was requested before its gating step completed."""

    kind = "step_order"
    http_status = 409


class UnknownActionError(InstallerError):
    """The request named no supported action."""

    kind = "unknown_action"
    http_status = 400
