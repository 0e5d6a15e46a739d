"""Transparent encryption for sensitive loader attributes.

Values are encrypted with Fernet before they reach the database and decrypted
when rows are loaded. Spreadsheets never carry the real secret: exports show
``PROTECTED_PLACEHOLDER`` and imports treat that placeholder as "keep the
current value".
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import Text
from sqlalchemy.exc import StatementError
from sqlalchemy.types import TypeDecorator

from loader_governance.config import get_settings
from loader_governance.constants.import_columns import PROTECTED_PLACEHOLDER
from loader_governance.services.errors import EncryptionError

logger = logging.getLogger(__name__)

PROTECTED_FIELDS: frozenset[str] = frozenset({"loader_sql"})


@lru_cache(maxsize=1)
def get_field_cipher() -> Fernet:
    key = (get_settings().field_encryption_key or "").strip()
    if not key:
        raise EncryptionError("FIELD_ENCRYPTION_KEY is not configured")
    try:
        return Fernet(key.encode())
    except (ValueError, TypeError) as exc:
        raise EncryptionError(f"Invalid field encryption key: {exc}") from exc


def encrypt_value(value: Optional[str], *, field: Optional[str] = None) -> Optional[str]:
    if value is None:
        return None
    if value == PROTECTED_PLACEHOLDER:
        raise EncryptionError("Refusing to store the protected placeholder as a value", field=field)
    cipher = get_field_cipher()
    try:
        return cipher.encrypt(value.encode("utf-8")).decode("ascii")
    except (TypeError, AttributeError) as exc:
        raise EncryptionError(f"Unable to encrypt value: {exc}", field=field) from exc


def decrypt_value(token: Optional[str], *, field: Optional[str] = None) -> Optional[str]:
    if token is None:
        return None
    cipher = get_field_cipher()
    try:
        return cipher.decrypt(token.encode("ascii")).decode("utf-8")
    except (InvalidToken, UnicodeError) as exc:
        logger.error("field-protection:decrypt-failed field=%s", field)
        raise EncryptionError("Unable to decrypt protected value", field=field) from exc


def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and value.strip() == PROTECTED_PLACEHOLDER


def mask_protected(values: Mapping[str, Any]) -> dict[str, Any]:
    """Copy ``values`` with every populated protected field replaced by the placeholder."""

    masked = dict(values)
    for name in PROTECTED_FIELDS:
        if masked.get(name) is not None:
            masked[name] = PROTECTED_PLACEHOLDER
    return masked


def drop_unchanged(changes: Mapping[str, Any]) -> dict[str, Any]:
    """Remove protected fields whose incoming value is the placeholder."""

    return {
        name: value
        for name, value in changes.items()
        if not (name in PROTECTED_FIELDS and is_placeholder(value))
    }


def unwrap_encryption_error(exc: BaseException) -> Optional[EncryptionError]:
    """Return the EncryptionError hidden inside a SQLAlchemy statement error, if any."""

    if isinstance(exc, EncryptionError):
        return exc
    if isinstance(exc, StatementError) and isinstance(exc.orig, EncryptionError):
        return exc.orig
    return None


class EncryptedText(TypeDecorator):
    """Text column that stores Fernet ciphertext and exposes plaintext."""

    impl = Text
    cache_ok = True

    def __init__(self, field_name: Optional[str] = None, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.field_name = field_name

    def process_bind_param(self, value, dialect):
        return encrypt_value(value, field=self.field_name)

    def process_result_value(self, value, dialect):
        return decrypt_value(value, field=self.field_name)


__all__ = [
    "EncryptedText",
    "PROTECTED_FIELDS",
    "decrypt_value",
    "drop_unchanged",
    "encrypt_value",
    "get_field_cipher",
    "is_placeholder",
    "mask_protected",
    "unwrap_encryption_error",
]
