"""
Post-install security cleanup gate.

After completion the installer endpoints are still reachable, which is
itself a security defect. Admin access stays blocked until the operator
acknowledges cleanup, which permanently disables the installer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..installer.environment import INSTALL_MARKER
from ..installer.errors import StepOrderError, StorageError
from ..installer.files import atomic_write
from ..shared.config import load_yaml
from .orchestrator import CLEANUP_MARKER

logger = logging.getLogger(__name__)

INSTALLER_DISABLED_FLAG = Path("config") / "installer.disabled"


class CleanupGate:
    """Tracks whether the post-install cleanup has been acknowledged."""

    def __init__(self, install_root: Path) -> None:
        self.install_root = Path(install_root)

    @property
    def installed(self) -> bool:
        return (self.install_root / INSTALL_MARKER).exists()

    @property
    def installed_at(self) -> Optional[str]:
        """Completion time recorded in the install marker, if readable."""
        try:
            value = load_yaml(self.install_root / INSTALL_MARKER).get("installed_at")
        except (OSError, ValueError, yaml.YAMLError):
            return None
        return None if value is None else str(value)

    @property
    def installer_disabled(self) -> bool:
        return (self.install_root / INSTALLER_DISABLED_FLAG).exists()

    @property
    def cleanup_pending(self) -> bool:
        return (self.install_root / CLEANUP_MARKER).exists()

    @property
    def admin_blocked(self) -> bool:
        """Admin access is blocked until cleanup is acknowledged."""
        if self.cleanup_pending:
            return True
        return self.installed and not self.installer_disabled

    def status(self) -> Dict[str, Any]:
        return {
            "installed": self.installed,
            "installed_at": self.installed_at,
            "cleanup_required": self.admin_blocked,
            "installer_disabled": self.installer_disabled,
            "acknowledge_url": "/cleanup/acknowledge",
        }

    def acknowledge(self) -> Dict[str, Any]:
        """Disable the installer and lift the admin block.

        Raises:
            StepOrderError: No completed installation exists yet
            StorageError: The disable flag could not be written or the
                cleanup marker could not be removed
        """
        if not self.installed:
            raise StepOrderError("Installation has not been completed")

        stamp = datetime.now(timezone.utc).isoformat()
        atomic_write(self.install_root / INSTALLER_DISABLED_FLAG, f"disabled_at: {stamp}\n", 0o644)
        marker = self.install_root / CLEANUP_MARKER
        try:
            marker.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(
                f"Could not remove cleanup marker: {exc.strerror or exc}", path=str(marker)
            ) from exc

        logger.info("Security cleanup acknowledged; installer disabled")
        return {"success": True, "message": "Installer disabled. Admin access is now available.", **self.status()}
