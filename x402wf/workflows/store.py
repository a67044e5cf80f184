"""
Nonce-keyed tracking of settlement workflows.

Every verified authorization gets exactly one entry, keyed by its nonce.
``track_if_absent`` is the only way entries are created and is the guard
that keeps two verify calls for the same nonce from dispatching two jobs.
"""
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from asgiref.sync import sync_to_async
from django.db import IntegrityError, transaction
from django.utils import timezone
from loguru import logger

from x402wf.errors import IllegalTransitionError
from x402wf.types import SettlementResult


class WorkflowStatus(str, Enum):
    PENDING_EXECUTION = 'pending_execution'
    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)


# PENDING_EXECUTION -> FAILED covers a dispatch the engine refused.
_ALLOWED_TRANSITIONS = {
    WorkflowStatus.PENDING_EXECUTION: {WorkflowStatus.RUNNING, WorkflowStatus.FAILED},
    WorkflowStatus.RUNNING: {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED},
}


def check_transition(nonce: str, current: WorkflowStatus, target: WorkflowStatus) -> bool:
    """
    Return True when ``current -> target`` must be applied, False when it is
    a no-op (same state, or the entry is already terminal). Raises
    ``IllegalTransitionError`` for anything else.
    """
    if current.is_terminal or current == target:
        return False
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise IllegalTransitionError(nonce, current.value, target.value)
    return True


@dataclass
class WorkflowTracking:
    nonce: str
    status: WorkflowStatus
    started_at: float
    workflow_id: Optional[str] = None
    payer: Optional[str] = None
    network: Optional[str] = None
    detail: Optional[str] = None
    result: Optional[SettlementResult] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class WorkflowStore(ABC):
    """
    Storage for workflow tracking entries.

    ``track_if_absent`` must be atomic: under concurrent calls for one nonce
    exactly one caller observes ``created=True``. Mutators return the entry
    after the change, or ``None`` when the nonce is not tracked (for example
    after a sweep).
    """

    @abstractmethod
    async def track_if_absent(
        self,
        nonce: str,
        payer: Optional[str] = None,
        network: Optional[str] = None,
    ) -> Tuple[WorkflowTracking, bool]:
        pass

    @abstractmethod
    async def get(self, nonce: str) -> Optional[WorkflowTracking]:
        pass

    @abstractmethod
    async def attach_workflow_id(self, nonce: str, workflow_id: str) -> Optional[WorkflowTracking]:
        pass

    @abstractmethod
    async def mark_running(self, nonce: str) -> Optional[WorkflowTracking]:
        pass

    @abstractmethod
    async def mark_completed(self, nonce: str, result: SettlementResult) -> Optional[WorkflowTracking]:
        pass

    @abstractmethod
    async def mark_failed(self, nonce: str, reason: str) -> Optional[WorkflowTracking]:
        pass

    @abstractmethod
    async def sweep(self, max_age_seconds: float) -> int:
        """Drop entries started more than ``max_age_seconds`` ago."""


class InMemoryWorkflowStore(WorkflowStore):
    """
    Single-process store. None of the methods await before touching the
    dict, so each one runs to completion on the event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, WorkflowTracking] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    async def track_if_absent(self, nonce, payer=None, network=None):
        existing = self._entries.get(nonce)
        if existing is not None:
            return replace(existing), False
        entry = WorkflowTracking(
            nonce=nonce,
            status=WorkflowStatus.PENDING_EXECUTION,
            started_at=self._clock(),
            payer=payer,
            network=network,
        )
        self._entries[nonce] = entry
        logger.info('Tracking settlement workflow for nonce {}', nonce)
        return replace(entry), True

    async def get(self, nonce):
        entry = self._entries.get(nonce)
        return replace(entry) if entry is not None else None

    async def attach_workflow_id(self, nonce, workflow_id):
        entry = self._entries.get(nonce)
        if entry is None:
            return None
        entry.workflow_id = workflow_id
        return replace(entry)

    async def mark_running(self, nonce):
        return self._transition(nonce, WorkflowStatus.RUNNING)

    async def mark_completed(self, nonce, result):
        return self._transition(nonce, WorkflowStatus.COMPLETED, result=result)

    async def mark_failed(self, nonce, reason):
        return self._transition(nonce, WorkflowStatus.FAILED, detail=reason)

    async def sweep(self, max_age_seconds):
        cutoff = self._clock() - max_age_seconds
        expired = [nonce for nonce, entry in self._entries.items()
                   if entry.started_at < cutoff]
        for nonce in expired:
            del self._entries[nonce]
        if expired:
            logger.info('Swept {} workflow tracking entries', len(expired))
        return len(expired)

    def _transition(self, nonce, target, result=None, detail=None):
        entry = self._entries.get(nonce)
        if entry is None:
            logger.warning('No workflow tracked for nonce {}, ignoring {}', nonce, target.value)
            return None
        if check_transition(nonce, entry.status, target):
            entry.status = target
            if result is not None:
                entry.result = result
            if detail is not None:
                entry.detail = detail
            logger.info('Workflow for nonce {} -> {}', nonce, target.value)
        return replace(entry)


class DatabaseWorkflowStore(WorkflowStore):
    """
    Store shared by every facilitator instance through the database.

    The unique nonce column makes the forced insert the atomic
    insert-if-absent; the loser of a race reads the winner's row.
    """

    def __init__(self):
        from x402wf.models import WorkflowRecord
        self.model = WorkflowRecord

    @staticmethod
    def _to_tracking(record) -> WorkflowTracking:
        result = None
        if record.result:
            result = SettlementResult.model_validate(record.result)
        return WorkflowTracking(
            nonce=record.nonce,
            status=WorkflowStatus(record.status),
            started_at=record.started_at.timestamp(),
            workflow_id=record.workflow_id or None,
            payer=record.payer or None,
            network=record.network or None,
            detail=record.detail or None,
            result=result,
        )

    def _track_if_absent(self, nonce, payer, network):
        try:
            with transaction.atomic():
                record = self.model(
                    nonce=nonce,
                    status=WorkflowStatus.PENDING_EXECUTION.value,
                    payer=payer or '',
                    network=network or '',
                )
                record.save(force_insert=True)
        except IntegrityError:
            logger.info('Workflow already tracked for nonce {}', nonce)
            return self._to_tracking(self.model.objects.get(nonce=nonce)), False
        logger.info('Tracking settlement workflow for nonce {}', nonce)
        return self._to_tracking(record), True

    def _get(self, nonce):
        record = self.model.objects.filter(nonce=nonce).first()
        return self._to_tracking(record) if record is not None else None

    def _attach_workflow_id(self, nonce, workflow_id):
        updated = self.model.objects.filter(nonce=nonce).update(
            workflow_id=workflow_id, updated_at=timezone.now())
        return self._get(nonce) if updated else None

    def _transition(self, nonce, target, result=None, detail=None):
        with transaction.atomic():
            record = self.model.objects.select_for_update().filter(nonce=nonce).first()
            if record is None:
                logger.warning('No workflow tracked for nonce {}, ignoring {}', nonce, target.value)
                return None
            if check_transition(nonce, WorkflowStatus(record.status), target):
                record.status = target.value
                fields = ['status', 'updated_at']
                if result is not None:
                    record.result = result.model_dump(mode='json')
                    record.transaction_hash = result.transaction or ''
                    fields += ['result', 'transaction_hash']
                if detail is not None:
                    record.detail = detail
                    fields.append('detail')
                record.save(update_fields=fields)
                logger.info('Workflow for nonce {} -> {}', nonce, target.value)
            return self._to_tracking(record)

    def _sweep(self, max_age_seconds):
        cutoff = timezone.now() - timedelta(seconds=max_age_seconds)
        deleted, _ = self.model.objects.filter(started_at__lt=cutoff).delete()
        if deleted:
            logger.info('Swept {} workflow tracking entries', deleted)
        return deleted

    async def track_if_absent(self, nonce, payer=None, network=None):
        return await sync_to_async(self._track_if_absent)(nonce, payer, network)

    async def get(self, nonce):
        return await sync_to_async(self._get)(nonce)

    async def attach_workflow_id(self, nonce, workflow_id):
        return await sync_to_async(self._attach_workflow_id)(nonce, workflow_id)

    async def mark_running(self, nonce):
        return await sync_to_async(self._transition)(nonce, WorkflowStatus.RUNNING)

    async def mark_completed(self, nonce, result):
        return await sync_to_async(self._transition)(
            nonce, WorkflowStatus.COMPLETED, result=result)

    async def mark_failed(self, nonce, reason):
        return await sync_to_async(self._transition)(
            nonce, WorkflowStatus.FAILED, detail=reason)

    async def sweep(self, max_age_seconds):
        return await sync_to_async(self._sweep)(max_age_seconds)

