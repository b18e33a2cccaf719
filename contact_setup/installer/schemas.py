"""
Machine-readable result contracts for the installer components.

These models are returned by the qualifier, the provisioner, the admin
registrar and the configuration generator, and are embedded verbatim in
the orchestrator's JSON responses.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class CheckLevel(str, Enum):
    """Severity of a single environment check."""

    EXCELLENT = "excellent"
    GOOD = "good"
    WARNING = "warning"
    ERROR = "error"


class EnvironmentCheckResult(BaseModel):
    """Outcome of one qualification check."""

    status: bool
    level: CheckLevel
    message: str
    critical: bool = Field(True, description="Whether a failed status blocks qualification")
    instructions: List[str] = Field(default_factory=list, description="Remediation hints for the operator")
    details: Dict[str, object] = Field(default_factory=dict)


class QualificationReport(BaseModel):
    """Aggregate of all environment checks."""

    checks: Dict[str, EnvironmentCheckResult] = Field(default_factory=dict)
    qualified: bool
    checked_at: datetime = Field(default_factory=datetime.utcnow)


class DatabaseCredentials(BaseModel):
    """Connection parameters for the target database server."""

    host: str
    port: int = Field(3306, ge=1, le=65535)
    user: str
    password: str = ""
    name: Optional[str] = None

    def with_database(self, name: Optional[str]) -> "DatabaseCredentials":
        return self.model_copy(update={"name": name})


class ConnectionTestResult(BaseModel):
    """Result of a plain connection test."""

    success: bool
    message: str
    server_version: Optional[str] = None
    latency_ms: Optional[float] = None
    can_create_tables: Optional[bool] = None
    error_code: Optional[int] = None


class DatabaseProvisionResult(BaseModel):
    """Outcome of the automatic database provisioning algorithm."""

    connection_success: bool = False
    permission_level: str = "unknown"
    suggested_database_name: Optional[str] = None
    auto_creation_attempted: bool = False
    auto_creation_success: bool = False
    final_database: Optional[str] = None
    fallback_needed: bool = False
    accessible_databases: List[str] = Field(default_factory=list)
    steps: List[str] = Field(default_factory=list)
    messages: List[str] = Field(default_factory=list)

    def record(self, step: str, message: str) -> None:
        self.steps.append(step)
        self.messages.append(message)


class TableResult(BaseModel):
    table: str
    status: str
    message: str


class SchemaInstallResult(BaseModel):
    """Outcome of installing the tables and seed settings."""

    success: bool
    tables: List[TableResult] = Field(default_factory=list)
    seeded_settings: List[str] = Field(default_factory=list)
    message: str = ""
    failed_table: Optional[str] = None


class AdminInfo(BaseModel):
    """Public identity of the first administrator (never the password)."""

    id: int
    username: str
    email: str
    first_name: str
    last_name: str


class ArtifactStatus(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ConfigArtifactResult(BaseModel):
    """One generated configuration artifact, as recorded in the session."""

    name: str
    status: ArtifactStatus
    message: str
    path: str
    permission: Optional[str] = None
