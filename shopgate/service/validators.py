"""Field validators for identity requests.

Each check returns ``None`` when the value passes or a human readable reason.
The ``validate_*`` helpers run the checks for one field in order and raise
:class:`~shopgate.service.errors.ValidationError` with the field prefix on the
first failure, e.g. ``"Nickname: the value is not a nickname"``.
"""

from __future__ import annotations

import re
from typing import Callable, Optional

from shopgate.service.errors import ValidationError

Check = Callable[[str], Optional[str]]

NICKNAME_MIN_LENGTH = 5
NICKNAME_MAX_LENGTH = 34
EMAIL_MIN_LENGTH = 6
EMAIL_MAX_LENGTH = 64
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 64
CONFIRMATION_TOKEN_LENGTH = 256

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_NICKNAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def not_blank(value: str) -> Optional[str]:
    if value == "":
        return "the value is blank"
    return None


def min_max_length(minimum: int, maximum: int) -> Check:
    def check(value: str) -> Optional[str]:
        length = len(value)
        if length < minimum:
            return (
                f"the value is too short length characters (minimum is {minimum} "
                f"characters vs your {length} character(s))"
            )
        if length > maximum:
            return (
                f"the value is too long length characters (maximum is {maximum} "
                f"characters vs your {length} character(s))"
            )
        return None

    return check


def exact_length(required: int) -> Check:
    def check(value: str) -> Optional[str]:
        length = len(value)
        if length != required:
            return (
                f"the value is not the required length characters (required is {required} "
                f"vs your {length} character(s))"
            )
        return None

    return check


def no_spaces(value: str) -> Optional[str]:
    for position, char in enumerate(value, start=1):
        if char.isspace():
            return f"the value contains a space (space in {position} position)"
    return None


def is_email(value: str) -> Optional[str]:
    if not _EMAIL_RE.match(value):
        return "the value is not an email"
    return None


def is_nickname(value: str) -> Optional[str]:
    if not _NICKNAME_RE.match(value):
        return "the value is not a nickname"
    return None


def first_error(value: str, *checks: Check) -> Optional[str]:
    for check in checks:
        reason = check(value)
        if reason:
            return reason
    return None


def _raise_on_error(field: str, value: str, *checks: Check) -> None:
    reason = first_error(value, *checks)
    if reason:
        raise ValidationError(f"{field}: {reason}")


def validate_nickname(nickname: str) -> None:
    _raise_on_error(
        "Nickname",
        nickname,
        not_blank,
        min_max_length(NICKNAME_MIN_LENGTH, NICKNAME_MAX_LENGTH),
        no_spaces,
        is_nickname,
    )


def validate_email(email: str) -> None:
    _raise_on_error(
        "Email",
        email,
        not_blank,
        min_max_length(EMAIL_MIN_LENGTH, EMAIL_MAX_LENGTH),
        no_spaces,
        is_email,
    )


def validate_password(password: str) -> None:
    _raise_on_error(
        "Password",
        password,
        not_blank,
        min_max_length(PASSWORD_MIN_LENGTH, PASSWORD_MAX_LENGTH),
        no_spaces,
    )


def validate_confirmation_token(token: str) -> None:
    _raise_on_error(
        "Token",
        token,
        not_blank,
        exact_length(CONFIRMATION_TOKEN_LENGTH),
        no_spaces,
    )
