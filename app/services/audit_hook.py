"""
Audit hook - fire-and-forget notification of committed mutations.

A failing sink is logged and ignored; it never blocks or fails the
operation that triggered it.
"""

from typing import Any, Callable, Dict, List, Optional
import logging

from app.models.base import utc_now
from app.models.identity import VoterIdentity

logger = logging.getLogger(__name__)

AuditSink = Callable[[Dict[str, Any]], None]


def log_sink(event: Dict[str, Any]) -> None:
    """Default sink: one structured line on the audit logger."""
    logging.getLogger("app.audit").info(
        f"{event['event']} incident={event['incident_id']} actor={event['actor']} details={event['details']}"
    )


class AuditHook:
    """Dispatches audit events to registered sinks."""

    def __init__(self, sinks: Optional[List[AuditSink]] = None):
        self.sinks: List[AuditSink] = list(sinks) if sinks is not None else [log_sink]

    def register(self, sink: AuditSink) -> None:
        self.sinks.append(sink)

    def record(
        self,
        event: str,
        incident_id: str,
        actor: VoterIdentity,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = {
            "event": event,
            "incident_id": incident_id,
            "actor": actor.key,
            "details": details or {},
            "timestamp": utc_now().isoformat(),
        }
        for sink in self.sinks:
            try:
                sink(payload)
            except Exception as e:
                logger.error(f"Audit sink failed for {event} on incident {incident_id}: {e}", exc_info=True)


# Global hook instance
_audit_hook = None


def get_audit_hook() -> AuditHook:
    """Get or create AuditHook singleton."""
    global _audit_hook
    if _audit_hook is None:
        _audit_hook = AuditHook()
    return _audit_hook
