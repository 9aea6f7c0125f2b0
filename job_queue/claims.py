"""
Claim-Based Work Queues — Readiness predicates for order call attempts.

  due_retry          RETRY_SCHEDULED, next_retry_at <= now, unlocked
                     → IN_PROGRESS + lock (re-dial)
  stale_in_progress  IN_PROGRESS, updated_at <= now - stale, unlocked or
                     lock older than stale → lock only (provider recovery)
  stale_queued       QUEUED, created_at <= now - stale_queued, unlocked
                     → IN_PROGRESS + lock (first dial never happened)

Every queue also requires retry_count < max_retries. The store performs
each claim as a conditional update, so overlapping sweeps split a batch
instead of double-processing it.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta

from config.settings import RetryConfig
from database.store_base import BaseOrderStore
from models.schemas import CallLog, CallStatus, ClaimSpec

logger = structlog.get_logger()


class CallLogClaimQueues:

    def __init__(self, policy: RetryConfig):
        self.policy = policy

    def due_retry(self, now: datetime) -> ClaimSpec:
        return ClaimSpec(
            name="due_retry",
            status=CallStatus.RETRY_SCHEDULED,
            age_field="next_retry_at",
            cutoff=now,
            max_retries=self.policy.max_retries,
            set_status=CallStatus.IN_PROGRESS,
        )

    def stale_in_progress(self, now: datetime) -> ClaimSpec:
        stale_before = now - timedelta(seconds=self.policy.stale_in_progress_s)
        return ClaimSpec(
            name="stale_in_progress",
            status=CallStatus.IN_PROGRESS,
            age_field="updated_at",
            cutoff=stale_before,
            max_retries=self.policy.max_retries,
            lock_stale_before=stale_before,
        )

    def stale_queued(self, now: datetime) -> ClaimSpec:
        return ClaimSpec(
            name="stale_queued",
            status=CallStatus.QUEUED,
            age_field="created_at",
            cutoff=now - timedelta(seconds=self.policy.stale_queued_s),
            max_retries=self.policy.max_retries,
            set_status=CallStatus.IN_PROGRESS,
        )

    async def claim(self, store: BaseOrderStore, spec: ClaimSpec, now: datetime) -> list[CallLog]:
        claimed = await store.claim_call_logs(spec, limit=self.policy.claim_batch_size, now=now)
        if claimed:
            logger.info("call_logs_claimed",
                        queue=spec.name,
                        count=len(claimed),
                        call_log_ids=[c.id for c in claimed])
        return claimed
