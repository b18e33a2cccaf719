"""
First administrator registration.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from argon2 import PasswordHasher
from email_validator import EmailNotValidError, validate_email
from sqlalchemy import or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from .database import describe_error, is_connectivity_error
from .errors import ConflictError, ConnectivityError, StorageError, ValidationError
from .schema import admin_users
from .schemas import AdminInfo

logger = logging.getLogger(__name__)

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 8

_PASSWORD_STRENGTH_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")


def build_password_hasher(
    time_cost: int = 4,
    memory_cost: int = 65536,
    parallelism: int = 3,
) -> PasswordHasher:
    return PasswordHasher(time_cost=time_cost, memory_cost=memory_cost, parallelism=parallelism)


def validate_admin_fields(
    username: str,
    email: str,
    password: str,
    confirm_password: str,
    first_name: str,
    last_name: str,
) -> None:
    """Raise ``ValidationError`` for the first rule the input breaks."""
    fields = {
        "username": username,
        "email": email,
        "password": password,
        "confirm_password": confirm_password,
        "first_name": first_name,
        "last_name": last_name,
    }
    for name, value in fields.items():
        if not value:
            raise ValidationError(f"Missing required field: {name}")

    if len(username) < MIN_USERNAME_LENGTH:
        raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters long")

    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError as exc:
        raise ValidationError("Please enter a valid email address") from exc

    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    if password != confirm_password:
        raise ValidationError("Passwords do not match")

    if not _PASSWORD_STRENGTH_RE.match(password):
        raise ValidationError(
            "Password must contain at least one uppercase letter, one lowercase letter, and one number"
        )


class AdminRegistrar:
    """Creates the first administrator in the provisioned database."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self.hasher = hasher or build_password_hasher()

    def create_admin(
        self,
        engine: Engine,
        *,
        username: str,
        email: str,
        password: str,
        confirm_password: str,
        first_name: str,
        last_name: str,
    ) -> AdminInfo:
        """Validate and persist the administrator.

        Raises:
            ValidationError: Input breaks a field or password rule
            ConflictError: Username or email already registered
            ConnectivityError: The database server could not be reached
            StorageError: The database rejected the write
        """
        username = (username or "").strip()
        email = (email or "").strip()
        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()

        validate_admin_fields(username, email, password, confirm_password, first_name, last_name)
        password_hash = self.hasher.hash(password)

        try:
            with engine.begin() as conn:
                existing = conn.execute(
                    select(admin_users.c.id).where(
                        or_(admin_users.c.username == username, admin_users.c.email == email)
                    )
                ).first()
                if existing is not None:
                    raise ConflictError("Username or email already exists")

                result = conn.execute(
                    admin_users.insert().values(
                        username=username,
                        email=email,
                        password_hash=password_hash,
                        first_name=first_name,
                        last_name=last_name,
                        role="admin",
                        is_active=True,
                    )
                )
                admin_id = int(result.inserted_primary_key[0])
        except IntegrityError as exc:
            raise ConflictError("Username or email already exists") from exc
        except OperationalError as exc:
            if not is_connectivity_error(exc):
                logger.error("Storing admin account failed: %s", exc)
                raise StorageError(f"Failed to create admin account: {describe_error(exc)[0]}") from exc
            logger.warning("Database unreachable while creating admin: %s", exc)
            raise ConnectivityError(describe_error(exc)[0]) from exc
        except SQLAlchemyError as exc:
            logger.error("Storing admin account failed: %s", exc)
            raise StorageError(f"Failed to create admin account: {getattr(exc, 'orig', None) or exc}") from exc

        logger.info("Created admin account id=%s username=%s", admin_id, username)
        return AdminInfo(
            id=admin_id,
            username=username,
            email=email,
            first_name=first_name,
            last_name=last_name,
        )
