"""
Table definitions and the idempotent schema installer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .schemas import SchemaInstallResult, TableResult

logger = logging.getLogger(__name__)

MYSQL_TABLE_OPTIONS = {
    "mysql_engine": "InnoDB",
    "mysql_charset": "utf8mb4",
    "mysql_collate": "utf8mb4_unicode_ci",
}

metadata = MetaData()

admin_users = Table(
    "admin_users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", String(255), nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("role", String(20), nullable=False, server_default="admin"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("last_login", DateTime),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", DateTime),
    Column("created_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    Index("idx_admin_active", "is_active"),
    comment="Admin users for contact form management",
    **MYSQL_TABLE_OPTIONS,
)

contact_submissions = Table(
    "contact_submissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("first_name", String(100), nullable=False),
    Column("last_name", String(100), nullable=False),
    Column("email_address", String(255), nullable=False),
    Column("inquiry_subject", String(250), nullable=False),
    Column("inquiry_message", Text, nullable=False),
    Column("department", String(100), nullable=False),
    Column("phone_number", String(50)),
    Column("domain_name", String(255)),
    Column("reference_id", String(50), unique=True),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("browser_name", String(100)),
    Column("operating_system", String(100)),
    Column("status", String(20), nullable=False, server_default="new"),
    Column("admin_notes", Text),
    Column("created_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    Column("updated_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    Index("idx_submission_email", "email_address"),
    Index("idx_submission_created", "created_at"),
    Index("idx_submission_department", "department"),
    comment="Contact form submissions",
    **MYSQL_TABLE_OPTIONS,
)

contact_attachments = Table(
    "contact_attachments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "submission_id",
        Integer,
        ForeignKey("contact_submissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("filename", String(255), nullable=False),
    Column("original_name", String(255), nullable=False),
    Column("file_size", Integer, nullable=False),
    Column("mime_type", String(100), nullable=False),
    Column("description", Text),
    Column("created_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    comment="File attachments for contact submissions",
    **MYSQL_TABLE_OPTIONS,
)

settings_table = Table(
    "settings",
    metadata,
    Column("key_name", String(50), primary_key=True),
    Column("value", Text, nullable=False),
    Column("description", Text),
    Column("updated_at", DateTime, nullable=False, server_default=func.current_timestamp()),
    comment="Key/value system settings",
    **MYSQL_TABLE_OPTIONS,
)

ADMIN_EMAIL_PLACEHOLDER = "admin@example.com"
MAX_UPLOAD_SIZE = 10 * 1024 * 1024
ALLOWED_EXTENSIONS = "jpg,jpeg,png,gif,pdf,txt,doc,docx"


def _reason(exc: SQLAlchemyError) -> object:
    return getattr(exc, "orig", None) or exc


def default_settings(installed_at: Optional[datetime] = None) -> List[Tuple[str, str, str]]:
    """Seed rows as ``(key, value, description)``."""
    stamp = (installed_at or datetime.now(timezone.utc)).isoformat()
    return [
        ("site_title", "Contact Form System", "Title shown on the public contact form"),
        ("admin_email", ADMIN_EMAIL_PLACEHOLDER, "Address receiving submission notifications"),
        ("max_upload_size", str(MAX_UPLOAD_SIZE), "Maximum attachment size in bytes"),
        ("allowed_extensions", ALLOWED_EXTENSIONS, "Comma separated attachment extensions"),
        ("installed_at", stamp, "Timestamp of the first schema installation"),
    ]


def install_schema(engine: Engine, installed_at: Optional[datetime] = None) -> SchemaInstallResult:
    """Create all tables and seed settings; safe to run repeatedly.

    Tables are created one at a time in dependency order, each guarded by
    an existence check. The first failing table stops the run before any
    settings are seeded.
    """
    results: List[TableResult] = []

    for table in metadata.sorted_tables:
        try:
            with engine.begin() as conn:
                table.create(conn, checkfirst=True)
        except SQLAlchemyError as exc:
            logger.error("Creating table %s failed: %s", table.name, exc)
            results.append(TableResult(table=table.name, status="error", message=str(_reason(exc))))
            return SchemaInstallResult(
                success=False,
                tables=results,
                failed_table=table.name,
                message=f"Creating table {table.name} failed: {_reason(exc)}",
            )
        results.append(TableResult(table=table.name, status="success", message=f"Table {table.name} ready"))

    try:
        seeded = seed_settings(engine, installed_at)
    except SQLAlchemyError as exc:
        logger.error("Seeding settings failed: %s", exc)
        return SchemaInstallResult(
            success=False,
            tables=results,
            failed_table=settings_table.name,
            message=f"Seeding default settings failed: {_reason(exc)}",
        )

    return SchemaInstallResult(
        success=True,
        tables=results,
        seeded_settings=seeded,
        message="Database tables created successfully",
    )


def seed_settings(engine: Engine, installed_at: Optional[datetime] = None) -> List[str]:
    """Insert default settings whose keys are absent; return inserted keys."""
    with engine.begin() as conn:
        existing = set(conn.execute(select(settings_table.c.key_name)).scalars())
        rows: List[Dict[str, str]] = [
            {"key_name": key, "value": value, "description": description}
            for key, value, description in default_settings(installed_at)
            if key not in existing
        ]
        if rows:
            conn.execute(settings_table.insert(), rows)
    return [row["key_name"] for row in rows]
