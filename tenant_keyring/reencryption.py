"""
Outbound re-encryption signal.

After a rotation the manager hands (old key, new key) to an external worker
that migrates stored ciphertexts and later reports completion through
KeyLifecycleManager.complete_rotation(). How that worker runs is not this
library's concern.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from .models import KeyPurpose, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReencryptionTask:
    """Migrate data of a pair from old_key_id to new_key_id."""

    tenant_id: str
    purpose: KeyPurpose
    old_key_id: str
    new_key_id: str
    requested_at: datetime = field(default_factory=utcnow)


class ReencryptionEmitter(ABC):
    """Fire-and-forget sink for re-encryption tasks."""

    @abstractmethod
    async def emit_reencryption_task(
        self,
        tenant_id: str,
        purpose: KeyPurpose,
        old_key_id: str,
        new_key_id: str,
    ) -> None:
        ...


class NullReencryptionEmitter(ReencryptionEmitter):
    """Drops tasks after logging them. Rotated keys stay ROTATING."""

    async def emit_reencryption_task(
        self,
        tenant_id: str,
        purpose: KeyPurpose,
        old_key_id: str,
        new_key_id: str,
    ) -> None:
        logger.info(
            "Re-encryption requested (no worker attached): tenant=%s purpose=%s old=%s new=%s",
            tenant_id,
            purpose,
            old_key_id,
            new_key_id,
        )


class QueueReencryptionEmitter(ReencryptionEmitter):
    """Puts tasks on an asyncio.Queue for an in-process worker to consume."""

    def __init__(self, queue: Optional["asyncio.Queue[ReencryptionTask]"] = None) -> None:
        self.queue: "asyncio.Queue[ReencryptionTask]" = (
            queue if queue is not None else asyncio.Queue()
        )

    async def emit_reencryption_task(
        self,
        tenant_id: str,
        purpose: KeyPurpose,
        old_key_id: str,
        new_key_id: str,
    ) -> None:
        self.queue.put_nowait(
            ReencryptionTask(
                tenant_id=tenant_id,
                purpose=purpose,
                old_key_id=old_key_id,
                new_key_id=new_key_id,
            )
        )
