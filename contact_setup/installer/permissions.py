"""
Privilege tier inference for database accounts.

The provisioner only asks one question of this module: may this account
create a database? How the answer is derived is kept here so that a
proper privilege-introspection API can replace the grant-text heuristic
without touching the provisioning control flow.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from typing import Callable, Iterable, Protocol

logger = logging.getLogger(__name__)


class PermissionLevel(str, Enum):
    """Inferred privilege tier of a database account."""

    ADMIN = "admin"
    CREATE = "create"
    LIMITED = "limited"
    UNKNOWN = "unknown"

    @property
    def can_create_database(self) -> bool:
        # unknown is treated as limited
        return self in (PermissionLevel.ADMIN, PermissionLevel.CREATE)


class PrivilegeInspector(Protocol):
    def inspect(self, fetch_grants: Callable[[], Iterable[str]]) -> PermissionLevel:
        ...


_GRANT_RE = re.compile(r"^GRANT\s+(?P<privs>.+?)\s+ON\s+(?P<target>\S+)\s+TO\s", re.IGNORECASE)


class GrantInspector:
    """Best-effort heuristic over MySQL ``SHOW GRANTS`` text."""

    def classify(self, grants: Iterable[str]) -> PermissionLevel:
        level = PermissionLevel.LIMITED
        for grant in grants:
            match = _GRANT_RE.match(grant.strip())
            if not match:
                continue
            privileges = {p.strip().upper() for p in match.group("privs").split(",")}
            global_scope = match.group("target").replace("`", "").startswith("*.")

            if "ALL PRIVILEGES" in privileges or "ALL" in privileges:
                if global_scope:
                    return PermissionLevel.ADMIN
                level = PermissionLevel.CREATE
            elif "CREATE" in privileges:
                level = PermissionLevel.CREATE
        return level

    def inspect(self, fetch_grants: Callable[[], Iterable[str]]) -> PermissionLevel:
        """Classify the grants returned by ``fetch_grants``.

        Any failure while fetching yields ``UNKNOWN``.
        """
        try:
            grants = list(fetch_grants())
        except Exception as exc:
            logger.warning("Could not inspect account grants: %s", exc)
            return PermissionLevel.UNKNOWN
        return self.classify(grants)
