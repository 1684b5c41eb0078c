"""
auth/audit.py -- Append-only audit trail of security-relevant outcomes.

record_event() never raises: a failed audit write is logged at ERROR and the
request carries on. Losing an audit row is bad; turning a healthy login into
a 500 because the audit table is locked is worse.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEvent

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("elixpo.audit")

SUCCESS = "success"
FAILURE = "failure"


def record_event(
    store: CredentialStore,
    event_type: str,
    status: str,
    principal_id: str | None = None,
    provider: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    error_message: str | None = None,
) -> None:
    logger.info("audit %s %s principal=%s ip=%s", event_type, status, principal_id, ip_address)
    try:
        store.insert_audit_event(
            AuditEvent(
                event_type=event_type,
                status=status,
                principal_id=principal_id,
                provider=provider,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message=error_message,
            )
        )
    except SQLAlchemyError:
        logger.error("audit write failed for %s (%s)", event_type, status, exc_info=True)
