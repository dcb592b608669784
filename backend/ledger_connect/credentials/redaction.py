"""
Keeps provider secrets out of log output, and records credential audit events.

Two layers:
- redact_credential_data / redact_credential_value scrub a structure before
  it is handed to a logger
- CredentialLoggingFilter scrubs every record on the root handler, so a
  stray extra={"refresh_token": ...} is caught even when the caller forgot

Identifiers (tenant_id, provider, credential_id, realm_id) pass through
untouched; they are what an operator needs to follow a credential.

Usage:
    audit = CredentialAuditLogger(tenant_id)
    audit.log(AuditEventType.CREDENTIAL_STORED, credential_id=cred.id, provider="xero")
"""

import logging
import re
from enum import Enum
from typing import Any, Dict, Optional

from ledger_connect.utils.clock import utcnow

REDACTED_VALUE = "[REDACTED]"

AUDIT_LOGGER_NAME = "ledger_connect.credentials.audit"

_MAX_DEPTH = 10


class AuditEventType(str, Enum):
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_REVOKED = "credential.revoked"
    CREDENTIAL_REAUTH_REQUIRED = "credential.reauth_required"
    CREDENTIAL_ERROR = "credential.error"


_SECRET_MARKERS = (
    "token", "secret", "password", "authorization", "bearer",
    "api_key", "apikey", "code_verifier", "signature",
)

# Contain a marker above but only ever hold identifiers or enum values
_IDENTIFIER_KEYS = frozenset({
    "credential_id", "token_type", "error_code", "tenant_id", "provider",
    "correlation_id", "delivery_id", "realm_id", "tenant_ref",
})

_SECRET_SHAPES = (
    re.compile(r"(?i)bearer\s+[A-Za-z0-9\-._~+/]+=*"),
    re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"),
    re.compile(r"\bttya_[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),
    re.compile(r"(?i)(refresh_token|access_token|client_secret|code)=[^&\s]+"),
)


def is_credential_secret_key(key: str) -> bool:
    """True when a field name suggests its value is a secret."""
    name = key.lower()
    return name not in _IDENTIFIER_KEYS and any(marker in name for marker in _SECRET_MARKERS)


def redact_credential_value(value: Any) -> Any:
    """Mask bearer headers, JWTs, API keys and token query parameters inside a string."""
    if isinstance(value, str):
        for shape in _SECRET_SHAPES:
            value = shape.sub(REDACTED_VALUE, value)
    return value


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Return a scrubbed copy of a dict/list/str structure. The input is not modified.

    Values under secret-looking keys are replaced wholesale, whatever their type.
    """
    if _depth > _MAX_DEPTH:
        return data

    if isinstance(data, dict):
        return {
            key: (
                REDACTED_VALUE if isinstance(key, str) and is_credential_secret_key(key)
                else redact_credential_data(value, _depth + 1)
            )
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_credential_data(item, _depth + 1) for item in data]
    return redact_credential_value(data)


class CredentialAuditLogger:
    """
    Emits one INFO record per credential lifecycle event on the audit logger.

    The record carries event_type, tenant_id, credential_id, provider and a
    scrubbed audit_metadata dict as attributes, so a JSON formatter or log
    shipper can index them directly.
    """

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self._logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log(
        self,
        event_type: AuditEventType,
        credential_id: Optional[str],
        provider: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._logger.info(
            "Credential audit: %s",
            event_type.value,
            extra={
                "event_type": event_type.value,
                "occurred_at": utcnow().isoformat(),
                "tenant_id": self.tenant_id,
                "credential_id": credential_id,
                "provider": provider,
                "audit_metadata": redact_credential_data(metadata) if metadata else {},
            },
        )

    def log_error(self, credential_id: Optional[str], provider: str, error: str) -> None:
        self.log(
            AuditEventType.CREDENTIAL_ERROR,
            credential_id=credential_id,
            provider=provider,
            metadata={"error": redact_credential_value(error)},
        )


# Built-in LogRecord attributes; only caller-supplied extras are scrubbed
_BUILTIN_RECORD_FIELDS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


class CredentialLoggingFilter(logging.Filter):
    """Scrubs the message, its args and every extra attribute of a record. Never drops records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_credential_value(record.msg)

        if isinstance(record.args, dict):
            record.args = redact_credential_data(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(redact_credential_value(arg) for arg in record.args)

        extras = [name for name in record.__dict__ if name not in _BUILTIN_RECORD_FIELDS]
        for name in extras:
            value = record.__dict__[name]
            if is_credential_secret_key(name):
                record.__dict__[name] = REDACTED_VALUE
            elif isinstance(value, (str, dict, list)):
                record.__dict__[name] = redact_credential_data(value)
        return True
