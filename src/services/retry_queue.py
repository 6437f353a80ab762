"""Durable retry queue for failed provider syncs.

A failed sync enqueues (or refreshes) one queued retry per
(workspace, provider). Retries are processed when due with exponential
backoff; a retry that exhausts its attempts is abandoned, one whose sync
succeeds is resolved. Retry jobs are part of the persisted integration
state, so they survive restarts and can be drained with process_due().

The attempt itself is injected as a callable so the queue does not depend
on the sync engine that feeds it.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from src.errors.formatter import render_message
from src.errors.registry import RETRY_EXHAUSTED
from src.services.integration_models import IntegrationSyncRetryJob
from src.services.integration_store import IntegrationStore
from src.services.integration_types import (
    SYNC_RETRY_JOB_CAP,
    IntegrationProvider,
    RetryStatus,
    SyncSettings,
)

logger = logging.getLogger(__name__)

STILL_BLOCKED_MESSAGE = "Still blocked. Reconnect provider or refresh token."

# (provider, workspace_key) -> sync succeeded
SyncAttempt = Callable[[IntegrationProvider, str], bool]


def backoff_delay(attempt: int, cap_minutes: int = 60) -> timedelta:
    """Delay before the next attempt: 2**n minutes, n clamped to [1, 8], capped."""
    exponent = min(max(1, attempt), 8)
    return min(timedelta(minutes=cap_minutes), timedelta(minutes=2 ** exponent))


def recovered_message(now: datetime) -> str:
    return f"Recovered at {now:%H:%M}."


class RetryQueue:
    """Retry jobs for failed syncs, capped at SYNC_RETRY_JOB_CAP entries.

    Args:
        store: Single owner of persisted integration state.
        settings: Attempt limit, initial delay, and backoff cap.
    """

    def __init__(self, store: IntegrationStore, settings: SyncSettings | None = None) -> None:
        self._store = store
        self._settings = settings or SyncSettings()

    @property
    def initial_delay(self) -> timedelta:
        return timedelta(seconds=self._settings.retry_initial_delay_seconds)

    def _find(self, retry_id: str) -> IntegrationSyncRetryJob | None:
        for retry in self._store.state.sync_retry_jobs:
            if retry.id == retry_id:
                return retry
        return None

    def enqueue_or_refresh(self, provider: IntegrationProvider, workspace_key: str, message: str) -> IntegrationSyncRetryJob:
        """Queue a retry for the pairing, or refresh the one already queued.

        A refreshed retry keeps its attempt count; its next attempt moves no
        later than now + initial delay.
        """
        with self._store.lock:
            now = self._store.now()
            soonest = now + self.initial_delay
            for retry in self._store.state.sync_retry_jobs:
                if (
                    retry.provider == provider
                    and retry.workspace_key == workspace_key
                    and retry.status == RetryStatus.queued
                ):
                    retry.updated_at = now
                    retry.last_error = message
                    retry.next_attempt_at = min(retry.next_attempt_at, soonest)
                    self._store.persist()
                    return retry

            retry = IntegrationSyncRetryJob(
                provider=provider,
                workspace_key=workspace_key,
                created_at=now,
                updated_at=now,
                max_attempts=self._settings.retry_max_attempts,
                next_attempt_at=soonest,
                last_error=message,
            )
            self._store.state.sync_retry_jobs.insert(0, retry)
            del self._store.state.sync_retry_jobs[SYNC_RETRY_JOB_CAP:]
            self._store.persist()
        logger.info("Queued sync retry for %s/%s: %s", workspace_key, provider.value, message)
        return retry

    def mark_resolved(self, provider: IntegrationProvider, workspace_key: str) -> int:
        """Resolve every queued retry for the pairing.

        Returns:
            Number of retries resolved.
        """
        with self._store.lock:
            now = self._store.now()
            count = 0
            for retry in self._store.state.sync_retry_jobs:
                if (
                    retry.provider == provider
                    and retry.workspace_key == workspace_key
                    and retry.status == RetryStatus.queued
                ):
                    retry.status = RetryStatus.resolved
                    retry.updated_at = now
                    retry.last_error = recovered_message(now)
                    count += 1
            if count:
                self._store.state.sync_retry_jobs.sort(key=lambda retry: retry.updated_at, reverse=True)
                self._store.persist()
        return count

    def due(self, workspace_key: str, max_jobs: int = 3) -> list[IntegrationSyncRetryJob]:
        """Queued retries whose next attempt is due, soonest first."""
        with self._store.lock:
            now = self._store.now()
            due = [
                retry
                for retry in self._store.state.sync_retry_jobs
                if retry.workspace_key == workspace_key
                and retry.status == RetryStatus.queued
                and retry.next_attempt_at <= now
            ]
        due.sort(key=lambda retry: retry.next_attempt_at)
        return due[: max(0, max_jobs)]

    def process_due(self, workspace_key: str, attempt: SyncAttempt, max_jobs: int = 3) -> int:
        """Attempt up to ``max_jobs`` due retries.

        Returns:
            Number of retries attempted.
        """
        processed = 0
        with self._store.lock:
            for retry in self.due(workspace_key, max_jobs):
                if self.process_attempt(retry.id, attempt):
                    processed += 1
        if processed:
            logger.info("Processed %d due sync retr(ies) for %s", processed, workspace_key)
        return processed

    def process_attempt(self, retry_id: str, attempt: SyncAttempt) -> bool:
        """Run one attempt for a queued retry.

        Each retry is processed independently: success resolves it, a failure
        at the attempt limit abandons it, any other failure reschedules it
        with backoff.

        Returns:
            False if the retry is unknown or not queued.
        """
        with self._store.lock:
            retry = self._find(retry_id)
            if retry is None or retry.status != RetryStatus.queued:
                return False

            now = self._store.now()
            retry.updated_at = now
            retry.attempt_count += 1
            max_attempts = max(1, retry.max_attempts)

            succeeded = attempt(retry.provider, retry.workspace_key)

            retry = self._find(retry_id)
            if retry is None:
                self._store.persist()
                return True

            retry.updated_at = now
            if succeeded:
                retry.status = RetryStatus.resolved
                retry.last_error = recovered_message(now)
            elif retry.attempt_count >= max_attempts:
                retry.status = RetryStatus.abandoned
                retry.last_error = render_message(RETRY_EXHAUSTED, attempts=max_attempts)
                logger.warning(
                    "Sync retry abandoned: provider=%s workspace=%s attempts=%d",
                    retry.provider.value, retry.workspace_key, retry.attempt_count,
                )
            else:
                retry.status = RetryStatus.queued
                retry.next_attempt_at = now + backoff_delay(
                    retry.attempt_count, self._settings.retry_backoff_cap_minutes,
                )
                retry.last_error = STILL_BLOCKED_MESSAGE
                logger.info(
                    "Sync retry failed (will retry): provider=%s attempt=%d/%d next=%s",
                    retry.provider.value, retry.attempt_count, max_attempts,
                    retry.next_attempt_at.isoformat(),
                )
            self._store.persist()
        return True

    def dismiss(self, retry_id: str) -> bool:
        """Remove a retry record regardless of status."""
        with self._store.lock:
            retry = self._find(retry_id)
            if retry is None:
                return False
            self._store.state.sync_retry_jobs.remove(retry)
            self._store.persist()
        logger.info("Dismissed sync retry %s", retry_id)
        return True

    def jobs(
        self,
        workspace_key: str,
        include_resolved: bool = True,
        limit: int = 60,
    ) -> list[IntegrationSyncRetryJob]:
        """Retry jobs for a workspace, most recently updated first."""
        with self._store.lock:
            matching = [
                retry.model_copy()
                for retry in self._store.state.sync_retry_jobs
                if retry.workspace_key == workspace_key
                and (include_resolved or retry.status == RetryStatus.queued)
            ]
        matching.sort(key=lambda retry: retry.updated_at, reverse=True)
        return matching[: max(0, limit)]
