from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError

from contact_setup.installer.admin import AdminRegistrar, build_password_hasher
from contact_setup.installer.environment import ConnectivityProbe, EnvironmentQualifier
from contact_setup.installer.schemas import DatabaseCredentials
from contact_setup.shared.config import InstallerSettings
from contact_setup.shared.observability import ServiceObservability


def mysql_error(code: int, message: str) -> OperationalError:
    """Build the exception SQLAlchemy raises for a PyMySQL failure."""
    return OperationalError("SELECT VERSION()", {}, Exception(code, message))


class FakeServer:
    """In-memory stand-in for ``DatabaseServer``."""

    def __init__(
        self,
        *,
        grants: Optional[List[str]] = None,
        databases: Optional[List[str]] = None,
        connect_error: Optional[Exception] = None,
        create_error: Optional[Exception] = None,
        unreachable: Optional[set] = None,
    ) -> None:
        self._grants = grants or []
        self.databases = list(databases or [])
        self.connect_error = connect_error
        self.create_error = create_error
        self.unreachable = unreachable or set()
        self.created: List[str] = []
        self.pinged: List[Optional[str]] = []
        self.disposed = False

    def ping(self, database: Optional[str] = None) -> str:
        self.pinged.append(database)
        if self.connect_error is not None:
            raise self.connect_error
        if database in self.unreachable:
            raise mysql_error(1044, f"Access denied for user to database '{database}'")
        return "8.0.36"

    def grants(self) -> List[str]:
        return self._grants

    def create_database(self, name: str) -> None:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(name)
        self.databases.append(name)

    def list_databases(self) -> List[str]:
        return list(self.databases)

    def can_create_tables(self, database: str) -> bool:
        return True

    def engine(self, database: Optional[str] = None):
        raise AssertionError("FakeServer has no engine")

    def dispose(self) -> None:
        self.disposed = True


@pytest.fixture
def settings(tmp_path: Path) -> InstallerSettings:
    return InstallerSettings(
        _env_file=None,
        install_root=tmp_path,
        site_url="http://forms.glowhost.test",
        connectivity_required=False,
        password_time_cost=1,
        password_memory_cost=8,
        password_parallelism=1,
    )


@pytest.fixture
def observability() -> ServiceObservability:
    return ServiceObservability("contact-setup-test", "0.0.0")


@pytest.fixture
def credentials() -> DatabaseCredentials:
    return DatabaseCredentials(host="db.internal", user="acct_webuser", password="s3cret!")


@pytest.fixture
def sqlite_engine(tmp_path: Path):
    engine = create_engine(f"sqlite:///{tmp_path / 'site.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def fast_registrar() -> AdminRegistrar:
    return AdminRegistrar(build_password_hasher(time_cost=1, memory_cost=8, parallelism=1))


def reachable_probe(status_code: int = 200) -> ConnectivityProbe:
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code))
    return ConnectivityProbe("https://updates.glowhost.test/manifest", 1.0, http_transport=transport)


@pytest.fixture
def qualifier(settings: InstallerSettings) -> EnvironmentQualifier:
    return EnvironmentQualifier(settings, runtime_version="3.12.4", capabilities=[], probe=reachable_probe())


def admin_fields(**overrides) -> Dict[str, str]:
    fields = {
        "username": "admin",
        "email": "owner@glowhost.com",
        "password": "Password1",
        "confirm_password": "Password1",
        "first_name": "Site",
        "last_name": "Owner",
    }
    fields.update(overrides)
    return fields
