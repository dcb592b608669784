"""
Process-wide logging setup.

Installs one stream handler on the root logger with the tenant-context
filter (tenant_id / correlation_id on every record) and the credential
redaction filter (no tokens in any record).
"""

import logging
from typing import Optional

from ledger_connect.credentials.redaction import CredentialLoggingFilter
from ledger_connect.platform.tenant_context import TenantContextLogFilter

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "tenant=%(tenant_id)s correlation=%(correlation_id)s %(message)s"
)

_HANDLER_NAME = "ledger_connect"


def configure_logging(level: Optional[str] = "INFO") -> logging.Handler:
    """Idempotent: a second call only updates the level."""
    root = logging.getLogger()
    root.setLevel((level or "INFO").upper())

    for handler in root.handlers:
        if handler.get_name() == _HANDLER_NAME:
            return handler

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(TenantContextLogFilter())
    handler.addFilter(CredentialLoggingFilter())
    root.addHandler(handler)

    logging.getLogger(__name__).info("Logging configured with tenant context and credential redaction")
    return handler
