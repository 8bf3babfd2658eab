"""
Audit sink contract for access logging of sensitive cache entries.

A sink is any callable accepting (event_type, level, message, source, metadata).
It may return None or an awaitable; callers never wait on it.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Union

AuditSink = Callable[[str, int, str, str, Mapping[str, Any]], Union[None, Awaitable[None]]]

audit_logger = logging.getLogger("cache_strategies.audit")


def logging_audit_sink(
    event_type: str,
    level: int,
    message: str,
    source: str,
    metadata: Mapping[str, Any],
) -> None:
    """Default sink: write the event to the `cache_strategies.audit` logger."""
    audit_logger.log(
        level,
        f"[{source}] {event_type}: {message}",
        extra={"audit_event": event_type, "audit_source": source, "audit_metadata": dict(metadata)},
    )
