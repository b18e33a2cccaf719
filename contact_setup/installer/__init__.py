"""
Installer components for the contact form product.

This package provides the leaf components the installation wizard
sequences: environment qualification, database provisioning and schema
installation, first-administrator registration, and configuration
artifact generation.
"""

from .admin import AdminRegistrar, build_password_hasher, validate_admin_fields
from .config_generator import ARTIFACTS, ConfigArtifact, ConfigurationGenerator, generate_keys
from .database import DatabaseProvisioner, DatabaseServer, derive_database_name, validate_database_name
from .environment import Capability, ConnectivityProbe, EnvironmentQualifier
from .errors import (
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
from .permissions import GrantInspector, PermissionLevel
from .schemas import (
    AdminInfo,
    ArtifactStatus,
    CheckLevel,
    ConfigArtifactResult,
    ConnectionTestResult,
    DatabaseCredentials,
    DatabaseProvisionResult,
    EnvironmentCheckResult,
    QualificationReport,
    SchemaInstallResult,
)

__all__ = [
    "ARTIFACTS",
    "AdminRegistrar",
    "build_password_hasher",
    "validate_admin_fields",
    "ConfigArtifact",
    "ConfigurationGenerator",
    "generate_keys",
    "DatabaseProvisioner",
    "DatabaseServer",
    "derive_database_name",
    "validate_database_name",
    "Capability",
    "ConnectivityProbe",
    "EnvironmentQualifier",
    "GrantInspector",
    "PermissionLevel",
    # Errors
    "ConflictError",
    "ConnectivityError",
    "CsrfError",
    "InstallerError",
    "PermissionDeniedError",
    "StepOrderError",
    "StorageError",
    "UnknownActionError",
    "ValidationError",
    # Result contracts
    "AdminInfo",
    "ArtifactStatus",
    "CheckLevel",
    "ConfigArtifactResult",
    "ConnectionTestResult",
    "DatabaseCredentials",
    "DatabaseProvisionResult",
    "EnvironmentCheckResult",
    "QualificationReport",
    "SchemaInstallResult",
]
