"""
Database provisioning: connection tests, privilege-aware database
creation with fallbacks, and schema installation.

Connectivity and creation failures are reported in the returned results,
never raised; the orchestrator decides whether to retry, fall back to
manual database creation, or abort.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError

from .permissions import GrantInspector, PrivilegeInspector
from .schema import install_schema
from .schemas import (
    ConnectionTestResult,
    DatabaseCredentials,
    DatabaseProvisionResult,
    SchemaInstallResult,
)

logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = frozenset({"information_schema", "mysql", "performance_schema", "sys"})
DATABASE_NAME_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")
CHARSET = "utf8mb4"
COLLATION = "utf8mb4_unicode_ci"

# MySQL client/server error codes and their operator-facing explanations.
ERROR_MESSAGES: Dict[int, str] = {
    1044: "The user does not have access to this database.",
    1045: "Access denied: the username or password is incorrect.",
    1049: "The specified database does not exist.",
    2002: "Unable to connect to the database server. Check the host and port.",
    2003: "Unable to connect to the database server. Check the host and port.",
    2006: "The database server is not responding. Try again in a moment.",
    2013: "Lost the connection to the database server. Try again in a moment.",
}

# Driver codes for failures reaching the server, as opposed to a statement failing.
CONNECT_ERROR_CODES = frozenset({2002, 2003, 2006, 2013})

EngineFactory = Callable[..., Engine]


def build_url(credentials: DatabaseCredentials, database: Optional[str] = None) -> URL:
    return URL.create(
        "mysql+pymysql",
        username=credentials.user,
        password=credentials.password,
        host=credentials.host,
        port=credentials.port,
        database=database,
        query={"charset": CHARSET},
    )


def create_mysql_engine(
    credentials: DatabaseCredentials,
    database: Optional[str] = None,
    *,
    connect_timeout: int = 10,
) -> Engine:
    return create_engine(
        build_url(credentials, database),
        connect_args={"connect_timeout": connect_timeout},
        pool_pre_ping=True,
    )


def error_code(exc: BaseException) -> Optional[int]:
    """Extract the driver error code from a SQLAlchemy exception, if any."""
    orig = getattr(exc, "orig", None)
    args = getattr(orig, "args", None) or ()
    if args and isinstance(args[0], int):
        return args[0]
    return None


def describe_error(exc: BaseException) -> Tuple[str, Optional[int]]:
    """Translate a driver failure into an operator-facing message."""
    code = error_code(exc)
    if code in ERROR_MESSAGES:
        return ERROR_MESSAGES[code], code

    detail = str(getattr(exc, "orig", None) or exc)
    lowered = detail.lower()
    if "access denied" in lowered:
        return ERROR_MESSAGES[1045], code
    if "can't connect" in lowered or "connection refused" in lowered:
        return ERROR_MESSAGES[2003], code
    if "timeout" in lowered or "timed out" in lowered:
        return "The database server is taking too long to respond.", code
    if "unknown database" in lowered:
        return ERROR_MESSAGES[1049], code
    return f"Database error: {detail[:200]}", code


def is_connectivity_error(exc: BaseException) -> bool:
    if error_code(exc) in CONNECT_ERROR_CODES:
        return True
    lowered = str(getattr(exc, "orig", None) or exc).lower()
    return any(marker in lowered for marker in ("can't connect", "connection refused", "timed out", "timeout"))


def validate_database_name(name: str) -> bool:
    return bool(DATABASE_NAME_RE.match(name))


def derive_database_name(username: str, suffix: Optional[str] = None) -> str:
    """Derive a database name from the account name.

    Shared hosts prefix every database with the account segment before the
    first underscore (``acct_user`` may only create ``acct_*``), so that
    segment is reused, followed by a short random suffix.
    """
    prefix = username.split("_", 1)[0] if "_" in username else username
    prefix = re.sub(r"[^A-Za-z0-9]", "", prefix) or "site"
    suffix = suffix or secrets.token_hex(2)
    return f"{prefix}_contactform_{suffix}"[:64]


class DatabaseServer:
    """One set of credentials against one database server."""

    def __init__(
        self,
        credentials: DatabaseCredentials,
        *,
        connect_timeout: int = 10,
        engine_factory: EngineFactory = create_mysql_engine,
    ) -> None:
        self.credentials = credentials
        self.connect_timeout = connect_timeout
        self._engine_factory = engine_factory
        self._engines: Dict[Optional[str], Engine] = {}

    def engine(self, database: Optional[str] = None) -> Engine:
        if database not in self._engines:
            self._engines[database] = self._engine_factory(
                self.credentials, database, connect_timeout=self.connect_timeout
            )
        return self._engines[database]

    def ping(self, database: Optional[str] = None) -> str:
        """Open a connection and return the server version string."""
        with self.engine(database).connect() as conn:
            return str(conn.execute(text("SELECT VERSION()")).scalar())

    def grants(self) -> List[str]:
        with self.engine().connect() as conn:
            return [str(row[0]) for row in conn.execute(text("SHOW GRANTS FOR CURRENT_USER()"))]

    def create_database(self, name: str) -> None:
        if not validate_database_name(name):
            raise ValueError(f"Invalid database name: {name!r}")
        with self.engine().begin() as conn:
            conn.execute(
                text(f"CREATE DATABASE IF NOT EXISTS `{name}` CHARACTER SET {CHARSET} COLLATE {COLLATION}")
            )

    def list_databases(self) -> List[str]:
        with self.engine().connect() as conn:
            names = [str(row[0]) for row in conn.execute(text("SHOW DATABASES"))]
        return [n for n in names if n.lower() not in SYSTEM_SCHEMAS]

    def can_create_tables(self, database: str) -> bool:
        try:
            with self.engine(database).connect() as conn:
                conn.execute(text("CREATE TEMPORARY TABLE contact_setup_probe (id INT)"))
                conn.execute(text("DROP TEMPORARY TABLE contact_setup_probe"))
        except SQLAlchemyError:
            return False
        return True

    def dispose(self) -> None:
        for engine in self._engines.values():
            engine.dispose()
        self._engines.clear()


ServerFactory = Callable[[DatabaseCredentials], DatabaseServer]


class DatabaseProvisioner:
    """Tests credentials, provisions a database and installs the schema."""

    def __init__(
        self,
        *,
        server_factory: Optional[ServerFactory] = None,
        inspector: Optional[PrivilegeInspector] = None,
        connect_timeout: int = 10,
    ) -> None:
        self._server_factory = server_factory or (
            lambda creds: DatabaseServer(creds, connect_timeout=connect_timeout)
        )
        self.inspector = inspector or GrantInspector()

    def test_connection(self, credentials: DatabaseCredentials) -> ConnectionTestResult:
        """Connect (optionally to ``credentials.name``) and report the outcome."""
        server = self._server_factory(credentials)
        start = time.time()
        try:
            version = server.ping(credentials.name)
            latency_ms = round((time.time() - start) * 1000, 2)
            can_create = server.can_create_tables(credentials.name) if credentials.name else None
        except SQLAlchemyError as exc:
            message, code = describe_error(exc)
            logger.info("Connection test to %s failed: %s", credentials.host, message)
            return ConnectionTestResult(success=False, message=f"Connection failed: {message}", error_code=code)
        finally:
            server.dispose()

        return ConnectionTestResult(
            success=True,
            message="Connection successful",
            server_version=version,
            latency_ms=latency_ms,
            can_create_tables=can_create,
        )

    def provision(
        self,
        credentials: DatabaseCredentials,
        preferred_name: Optional[str] = None,
    ) -> DatabaseProvisionResult:
        """Find or create a database the account can install into."""
        result = DatabaseProvisionResult()
        server = self._server_factory(credentials.with_database(None))
        try:
            return self._provision(server, credentials, preferred_name, result)
        finally:
            server.dispose()

    def _provision(
        self,
        server: DatabaseServer,
        credentials: DatabaseCredentials,
        preferred_name: Optional[str],
        result: DatabaseProvisionResult,
    ) -> DatabaseProvisionResult:
        try:
            version = server.ping(None)
        except SQLAlchemyError as exc:
            message, _ = describe_error(exc)
            result.fallback_needed = True
            result.record("connect", f"Server connection failed: {message}")
            return result
        result.connection_success = True
        result.record("connect", f"Connected to MySQL {version}")

        level = self.inspector.inspect(server.grants)
        result.permission_level = level.value
        result.record("permissions", f"Detected permission level: {level.value}")

        if preferred_name:
            if not validate_database_name(preferred_name):
                result.fallback_needed = True
                result.record(
                    "name",
                    "Database names may only contain letters, digits and underscores (max 64).",
                )
                return result
            name = preferred_name
        else:
            name = derive_database_name(credentials.user)
        result.suggested_database_name = name
        result.record("name", f"Target database name: {name}")

        selected: Optional[str] = None
        if level.can_create_database:
            result.auto_creation_attempted = True
            try:
                server.create_database(name)
            except (SQLAlchemyError, ValueError) as exc:
                message, _ = describe_error(exc)
                result.record("create", f"Automatic creation of {name} failed: {message}")
            else:
                result.auto_creation_success = True
                selected = name
                result.record("create", f"Database {name} is ready")
        else:
            result.record("create", "Account cannot create databases; looking for existing ones")

        if selected is None:
            selected = self._pick_existing(server, preferred_name, result)
            if selected is None:
                result.fallback_needed = True
                result.record(
                    "fallback",
                    "No accessible database found. Create one in your hosting control panel and enter its name.",
                )
                return result
            result.suggested_database_name = selected

        try:
            server.ping(selected)
        except SQLAlchemyError as exc:
            message, _ = describe_error(exc)
            result.fallback_needed = True
            result.record("verify", f"Could not connect to {selected}: {message}")
            return result

        result.final_database = selected
        result.record("verify", f"Verified access to {selected}")
        return result

    def _pick_existing(
        self,
        server: DatabaseServer,
        preferred_name: Optional[str],
        result: DatabaseProvisionResult,
    ) -> Optional[str]:
        try:
            databases = server.list_databases()
        except SQLAlchemyError as exc:
            message, _ = describe_error(exc)
            result.record("enumerate", f"Could not list databases: {message}")
            return None

        result.accessible_databases = databases
        if not databases:
            result.record("enumerate", "No accessible databases found")
            return None
        choice = preferred_name if preferred_name in databases else databases[0]
        result.record("enumerate", f"Found {len(databases)} accessible database(s); using {choice}")
        return choice

    def install_schema(self, credentials: DatabaseCredentials) -> SchemaInstallResult:
        """Install tables and seed settings into ``credentials.name``."""
        if not credentials.name:
            return SchemaInstallResult(success=False, message="No database selected")
        server = self._server_factory(credentials)
        try:
            return install_schema(server.engine(credentials.name))
        finally:
            server.dispose()
