from typing import Any

from solders.pubkey import Pubkey

from .exceptions import ValidationError


def is_valid_address(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        Pubkey.from_string(value)
    except ValueError:
        return False
    return True


def parse_address(value: Any, field: str = "address") -> Pubkey:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Invalid {field}: value is required")
    try:
        return Pubkey.from_string(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}: {value}") from exc
