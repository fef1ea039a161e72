"""Input validation for auth operations.

Field validators raise ``ValueError`` so pydantic request models can reuse
them directly. The ``validate_*`` functions check a whole operation input,
collect every field failure and raise a single ``ValidationError`` whose
detail lists them.
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Callable, Iterable, List, Tuple

from micropost.service.errors import ValidationError

NAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 100

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
# At least one letter and one digit, drawn from letters, digits and common symbols
_PASSWORD_PATTERN = re.compile(
    r"^(?=.*[a-zA-Z])(?=.*\d)[a-zA-Z\d!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]+$"
)


def validate_name(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("name must be a string")
    value = unicodedata.normalize("NFC", value).strip()
    if not value:
        raise ValueError("name is required")
    if len(value) > NAME_MAX_LENGTH:
        raise ValueError(f"name must be at most {NAME_MAX_LENGTH} characters")
    return value


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFC", value).strip().lower()
    if not normalized:
        raise ValueError("email is required")
    if len(normalized) > EMAIL_MAX_LENGTH:
        raise ValueError(f"email must be at most {EMAIL_MAX_LENGTH} characters")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_new_password(value: str) -> str:
    """Strength rules for any password being set."""
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    if not _PASSWORD_PATTERN.match(value):
        raise ValueError(
            "password must contain letters and digits and only common symbols"
        )
    return value


def validate_required(value: str, label: str = "value") -> str:
    """Presence check for secrets that are compared rather than set."""
    if not isinstance(value, str) or not value:
        raise ValueError(f"{label} is required")
    return value


@dataclass(frozen=True)
class RegistrationInput:
    name: str
    email: str
    password: str


@dataclass(frozen=True)
class LoginInput:
    email: str
    password: str


@dataclass(frozen=True)
class PasswordChangeInput:
    current_password: str
    new_password: str


@dataclass(frozen=True)
class PasswordResetInput:
    token: str
    new_password: str


def _collect(checks: Iterable[Tuple[str, Callable[[], str]]]) -> List[str]:
    values: List[str] = []
    errors: List[dict] = []
    for field_name, check in checks:
        try:
            values.append(check())
        except ValueError as exc:
            errors.append({"field": field_name, "message": str(exc)})
            values.append("")
    if errors:
        raise ValidationError(detail={"errors": errors})
    return values


def validate_registration(name: str, email: str, password: str) -> RegistrationInput:
    name, email, password = _collect(
        [
            ("name", lambda: validate_name(name)),
            ("email", lambda: validate_email(email)),
            ("password", lambda: validate_new_password(password)),
        ]
    )
    return RegistrationInput(name=name, email=email, password=password)


def validate_login(email: str, password: str) -> LoginInput:
    email, password = _collect(
        [
            ("email", lambda: validate_email(email)),
            ("password", lambda: validate_required(password, "password")),
        ]
    )
    return LoginInput(email=email, password=password)


def validate_forgot_password(email: str) -> str:
    (email,) = _collect([("email", lambda: validate_email(email))])
    return email


def validate_password_change(current_password: str, new_password: str) -> PasswordChangeInput:
    current_password, new_password = _collect(
        [
            ("currentPassword", lambda: validate_required(current_password, "current password")),
            ("newPassword", lambda: validate_new_password(new_password)),
        ]
    )
    return PasswordChangeInput(current_password=current_password, new_password=new_password)


def validate_password_reset(token: str, new_password: str) -> PasswordResetInput:
    token, new_password = _collect(
        [
            ("token", lambda: validate_required(token, "reset token")),
            ("newPassword", lambda: validate_new_password(new_password)),
        ]
    )
    return PasswordResetInput(token=token, new_password=new_password)
