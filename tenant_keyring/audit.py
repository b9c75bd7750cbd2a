"""
Append-only audit trail of cryptographic operations.

This module provides:
- AuditSink: Abstract destination for audit events
- InMemoryAuditSink: Thread-safe list-backed sink for tests and development
- LoggingAuditSink: One structured log record per event
- AuditLogger: Front end that never lets a sink failure reach the caller

PostgresAuditSink lives in postgres.py with the other asyncpg code.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from .models import AuditEvent, AuditOperation, AuditOutcome

logger = logging.getLogger(__name__)

# Side channel for audit failures; wire it to alerting in deployment.
monitor = logging.getLogger("tenant_keyring.monitoring")


class AuditSink(ABC):
    """Destination for audit events. Sinks only ever append."""

    @abstractmethod
    async def write(self, event: AuditEvent) -> None:
        ...


class InMemoryAuditSink(AuditSink):
    """
    In-memory audit sink for testing and development.

    Not persistent; events are lost on restart.
    """

    def __init__(self) -> None:
        self._events: List[AuditEvent] = []
        self._lock = threading.Lock()

    async def write(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        """Snapshot of all events in write order."""
        with self._lock:
            return list(self._events)

    def query(
        self,
        tenant_id: Optional[str] = None,
        operation: Optional[AuditOperation] = None,
        outcome: Optional[AuditOutcome] = None,
        key_id: Optional[str] = None,
    ) -> List[AuditEvent]:
        """Events matching every given filter."""
        with self._lock:
            events = list(self._events)
        return [
            e
            for e in events
            if (tenant_id is None or e.tenant_id == tenant_id)
            and (operation is None or e.operation == operation)
            and (outcome is None or e.outcome == outcome)
            and (key_id is None or e.key_id == key_id)
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class LoggingAuditSink(AuditSink):
    """Emits each event as a JSON log line on the given logger."""

    def __init__(self, audit_logger: Optional[logging.Logger] = None) -> None:
        self._logger = audit_logger or logging.getLogger("tenant_keyring.audit")

    async def write(self, event: AuditEvent) -> None:
        self._logger.info(json.dumps(event.to_dict(), sort_keys=True))


class AuditLogger:
    """
    Records one AuditEvent per encrypt/decrypt/rotate/create/retire.

    log() never raises back into the caller (cancellation aside): sink
    failures are reported on the monitoring logger, counted, and passed to
    the optional on_failure callback.
    """

    def __init__(
        self,
        sink: Optional[AuditSink] = None,
        on_failure: Optional[Callable[[AuditEvent, Exception], None]] = None,
    ) -> None:
        self._sink = sink if sink is not None else InMemoryAuditSink()
        self._on_failure = on_failure
        self._failures = 0

    @property
    def sink(self) -> AuditSink:
        return self._sink

    @property
    def failure_count(self) -> int:
        """Number of events that could not be written."""
        return self._failures

    async def log(
        self,
        tenant_id: str,
        operation: AuditOperation,
        key_id: Optional[str],
        version: Optional[int],
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        error: Optional[BaseException] = None,
    ) -> Optional[AuditEvent]:
        """
        Build and write an audit event.

        Args:
            tenant_id: Tenant the operation ran for
            operation: What was done
            key_id: Key involved (None if it could not be resolved)
            version: Key version involved
            outcome: SUCCESS or FAILURE
            error: Exception behind a failure; only its class name is recorded

        Returns:
            The event, or None if it could not be recorded
        """
        event = AuditEvent(
            tenant_id=tenant_id,
            operation=operation,
            key_id=key_id,
            version=version,
            outcome=outcome,
            error=type(error).__name__ if error is not None else None,
        )
        try:
            await self._sink.write(event)
            return event
        except Exception as e:
            self._failures += 1
            monitor.error(
                "Audit write failed: tenant=%s operation=%s key_id=%s error=%s",
                tenant_id,
                operation,
                key_id,
                type(e).__name__,
            )
            if self._on_failure is not None:
                try:
                    self._on_failure(event, e)
                except Exception:
                    monitor.exception("Audit failure callback raised")
            return None
