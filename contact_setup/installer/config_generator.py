"""
Generation of the configuration artifacts written at the end of an
installation: environment variables, database and admin configuration,
secret key material, and web server access rules.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..shared.config import InstallerSettings, dump_yaml
from .files import atomic_write
from .schema import ALLOWED_EXTENSIONS, MAX_UPLOAD_SIZE
from .schemas import AdminInfo, ArtifactStatus, ConfigArtifactResult, DatabaseCredentials

logger = logging.getLogger(__name__)

SESSION_LIFETIME = 7200
CSRF_TOKEN_EXPIRY = 3600
RATE_LIMIT_MAX_ATTEMPTS = 5
RATE_LIMIT_WINDOW = 300
LOGIN_MAX_ATTEMPTS = 5
LOCKOUT_DURATION = 900


@dataclass
class GenerationContext:
    settings: InstallerSettings
    database: DatabaseCredentials
    admin: AdminInfo
    generated_at: datetime
    token_factory: Callable[[int], str]

    @property
    def stamp(self) -> str:
        return self.generated_at.strftime("%Y-%m-%d %H:%M:%S UTC")


@dataclass(frozen=True)
class ConfigArtifact:
    """One generated file: where it goes, how it is produced, its mode."""

    name: str
    relative_path: Path
    render: Callable[[GenerationContext], str]
    permission: int
    message: str


def _env_value(value: Any) -> str:
    text = str(value)
    if text and all(ch.isalnum() or ch in "._-/:@,+" for ch in text):
        return text
    escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$")
    return f'"{escaped}"'


def render_env(ctx: GenerationContext) -> str:
    db = ctx.database
    entries = [
        ("Database Configuration", None),
        ("DB_HOST", db.host),
        ("DB_PORT", db.port),
        ("DB_NAME", db.name),
        ("DB_USER", db.user),
        ("DB_PASSWORD", db.password),
        ("DB_CHARSET", "utf8mb4"),
        ("Application Settings", None),
        ("APP_ENV", ctx.settings.environment),
        ("APP_DEBUG", "false"),
        ("APP_URL", ctx.settings.site_url),
        ("Security", None),
        ("SESSION_LIFETIME", SESSION_LIFETIME),
        ("CSRF_TOKEN_EXPIRY", CSRF_TOKEN_EXPIRY),
        ("File Upload Settings", None),
        ("UPLOAD_MAX_SIZE", MAX_UPLOAD_SIZE),
        ("UPLOAD_ALLOWED_TYPES", ALLOWED_EXTENSIONS),
        ("Contact Form Settings", None),
        ("CONTACT_FORM_ENABLED", "true"),
        ("AUTO_SAVE_ENABLED", "true"),
        ("RATE_LIMIT_ENABLED", "true"),
        ("RATE_LIMIT_MAX_ATTEMPTS", RATE_LIMIT_MAX_ATTEMPTS),
        ("RATE_LIMIT_WINDOW", RATE_LIMIT_WINDOW),
    ]
    lines = ["# Contact Form System Environment Configuration", f"# Generated on {ctx.stamp}"]
    for key, value in entries:
        if value is None:
            lines.extend(["", f"# {key}"])
        else:
            lines.append(f"{key}={_env_value(value)}")
    return "\n".join(lines) + "\n"


def render_database(ctx: GenerationContext) -> str:
    db = ctx.database
    data = {
        "database": {
            "driver": "mysql+pymysql",
            "host": db.host,
            "port": db.port,
            "name": db.name,
            "username": db.user,
            "password": db.password,
            "charset": "utf8mb4",
            "collation": "utf8mb4_unicode_ci",
            "init_command": "SET NAMES utf8mb4 COLLATE utf8mb4_unicode_ci",
            "connect_timeout": ctx.settings.database_connect_timeout_seconds,
        }
    }
    return dump_yaml(data, f"Database configuration\nGenerated by the installation wizard on {ctx.stamp}")


def render_admin(ctx: GenerationContext) -> str:
    data = {
        "administrator": {
            "id": ctx.admin.id,
            "username": ctx.admin.username,
            "email": ctx.admin.email,
        },
        "session": {
            "name": "CF_ADMIN_SESSION",
            "lifetime": SESSION_LIFETIME,
            "path": "/",
            "secure": ctx.settings.site_url.startswith("https://"),
            "httponly": True,
            "samesite": "Strict",
        },
        "login": {
            "max_attempts": LOGIN_MAX_ATTEMPTS,
            "lockout_duration": LOCKOUT_DURATION,
            "remember_me_duration": 2592000,
            "password_reset_expiry": 3600,
        },
        "security": {
            "csrf_token_expiry": CSRF_TOKEN_EXPIRY,
            "require_ssl": ctx.settings.site_url.startswith("https://"),
            "ip_whitelist": [],
            "two_factor_enabled": False,
        },
        "ui": {
            "items_per_page": 25,
            "timezone": "UTC",
            "theme": "default",
        },
        "notifications": {
            "email_on_login": False,
            "email_on_new_submission": True,
            "email_on_failed_login": True,
        },
    }
    return dump_yaml(data, f"Admin configuration\nGenerated by the installation wizard on {ctx.stamp}")


def generate_keys(token_factory: Callable[[int], str] = secrets.token_hex) -> Dict[str, str]:
    """Return three independent 256-bit keys, pairwise distinct."""
    while True:
        keys = {name: token_factory(32) for name in ("session", "csrf", "encryption")}
        if len(set(keys.values())) == len(keys):
            return keys


def render_security(ctx: GenerationContext) -> str:
    settings = ctx.settings
    data = {
        "keys": generate_keys(ctx.token_factory),
        "password": {
            "algorithm": "argon2id",
            "time_cost": settings.password_time_cost,
            "memory_cost": settings.password_memory_cost,
            "parallelism": settings.password_parallelism,
        },
        "rate_limiting": {
            "enabled": True,
            "max_attempts": RATE_LIMIT_MAX_ATTEMPTS,
            "time_window": RATE_LIMIT_WINDOW,
            "cleanup_interval": 3600,
        },
        "file_upload": {
            "max_size": MAX_UPLOAD_SIZE,
            "allowed_types": [
                "image/jpeg",
                "image/png",
                "image/gif",
                "application/pdf",
                "text/plain",
                "application/msword",
                "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            ],
            "quarantine_suspicious": True,
        },
    }
    header = f"Security configuration\nGenerated on {ctx.stamp}\nWARNING: keep these keys secret."
    return dump_yaml(data, header)


def render_access_rules(ctx: GenerationContext) -> str:
    return f"""# Contact Form System Security Rules
# Generated: {ctx.stamp}

# Deny access to secret-bearing files
<FilesMatch "^\\.env$">
    Require all denied
</FilesMatch>

<FilesMatch "\\.(ya?ml|lock|log|sql|bak|backup|old|tmp)$">
    Require all denied
</FilesMatch>

<IfModule mod_rewrite.c>
    RewriteEngine On
    # Configuration and installer directories
    RewriteRule ^(config|install)(/|$) - [F,L]
    # No executable code from the upload directory
    RewriteRule ^uploads/.*\\.(php|py|cgi|pl|sh)$ - [F,L,NC]
</IfModule>

# Prevent directory browsing
Options -Indexes

<IfModule mod_headers.c>
    Header always set X-Content-Type-Options nosniff
    Header always set X-Frame-Options DENY
    Header always set Referrer-Policy "strict-origin-when-cross-origin"
    Header always set Permissions-Policy "geolocation=(), microphone=(), camera=()"
</IfModule>
"""


ARTIFACTS: List[ConfigArtifact] = [
    ConfigArtifact(".env", Path(".env"), render_env, 0o600, "Environment configuration created"),
    ConfigArtifact(
        "config/database.yaml",
        Path("config") / "database.yaml",
        render_database,
        0o600,
        "Database configuration created",
    ),
    ConfigArtifact(
        "config/admin.yaml",
        Path("config") / "admin.yaml",
        render_admin,
        0o644,
        "Admin configuration created",
    ),
    ConfigArtifact(
        "config/security.yaml",
        Path("config") / "security.yaml",
        render_security,
        0o600,
        "Security keys generated",
    ),
    ConfigArtifact(".htaccess", Path(".htaccess"), render_access_rules, 0o644, "Access restriction rules created"),
]


class ConfigurationGenerator:
    """Writes every configuration artifact under the install root."""

    def __init__(
        self,
        settings: InstallerSettings,
        *,
        artifacts: Optional[List[ConfigArtifact]] = None,
        token_factory: Callable[[int], str] = secrets.token_hex,
    ) -> None:
        self.settings = settings
        self.install_root = Path(settings.install_root)
        self.artifacts = artifacts if artifacts is not None else ARTIFACTS
        self.token_factory = token_factory

    def generate(self, database: DatabaseCredentials, admin: AdminInfo) -> List[ConfigArtifactResult]:
        """Render and write each artifact in order.

        Raises:
            StorageError: naming the first artifact that could not be written;
                artifacts written before it are left in place
        """
        ctx = GenerationContext(
            settings=self.settings,
            database=database,
            admin=admin,
            generated_at=datetime.now(timezone.utc),
            token_factory=self.token_factory,
        )
        results: List[ConfigArtifactResult] = []
        for artifact in self.artifacts:
            target = self.install_root / artifact.relative_path
            atomic_write(target, artifact.render(ctx), artifact.permission)
            results.append(
                ConfigArtifactResult(
                    name=artifact.name,
                    status=ArtifactStatus.SUCCESS,
                    message=artifact.message,
                    path=str(target),
                    permission=f"{artifact.permission:04o}",
                )
            )
            logger.info("Wrote %s with mode %04o", target, artifact.permission)
        return results
