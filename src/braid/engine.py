"""SyncEngine: reconciliation passes between the local tracker and a remote tracker.

Two entry points feed the same per-issue reconciliation:

- ``process_webhook_event`` for one normalized delivery (idempotent on the
  delivery ID), and
- ``full_sync`` which lists every remote issue, pairs both sides through
  the mapping table, creates missing counterparts, and resolves every pair.

Per installation the sync state moves ``idle -> syncing -> idle`` or
``syncing -> error``. Work on one issue is serialized with a per-issue
``asyncio.Lock``; creating counterparts is serialized per installation so
the ``issues.opened`` echo of an issue we just created is matched to its
mapping instead of producing a duplicate. Mapping rows are also versioned,
which covers writers in other processes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from braid.convert import issue_to_remote, remote_to_issue
from braid.core import ExternalRef
from braid.db_base import _parse_ts
from braid.debounce import ChangeDebouncer
from braid.errors import (
    MappingError,
    RemoteAPIError,
    StaleMappingError,
    SyncFailedError,
    WebhookError,
)
from braid.resolver import resolve
from braid.retry import RetryPolicy, with_retry

if TYPE_CHECKING:
    from braid.conventions import ConventionConfig
    from braid.core import BraidDB, Installation, Issue, IssueMapping
    from braid.remote import RemoteIssue, RemoteTracker
    from braid.types.sync import SyncErrorRecord, SyncResultDict
    from braid.webhook import NormalizedEvent

logger = logging.getLogger(__name__)

HANDLED_ISSUE_ACTIONS = frozenset(
    {"opened", "edited", "closed", "reopened", "labeled", "unlabeled", "assigned", "unassigned"}
)
STALE_MAPPING_RETRIES = 3
SYNC_ACTOR = "sync"


def _iso(value: str | None) -> str | None:
    parsed = _parse_ts(value)
    return parsed.isoformat() if parsed else None


def _later(a: str | None, b: str | None) -> str | None:
    pa, pb = _parse_ts(a), _parse_ts(b)
    if pa is None:
        return b
    if pb is None:
        return a
    return a if pa >= pb else b


@dataclass
class _KeyedLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


@dataclass
class SyncResult:
    installation_id: str
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    errors: list[SyncErrorRecord] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    cancelled: bool = False

    def add_error(self, ref: str, exc: BaseException) -> None:
        self.errors.append({"id": ref, "error": str(exc)})

    def to_dict(self) -> SyncResultDict:
        return {
            "installation_id": self.installation_id,
            "created": list(self.created),
            "updated": list(self.updated),
            "conflicts": list(self.conflicts),
            "errors": list(self.errors),
            "skipped": list(self.skipped),
            "cancelled": self.cancelled,
        }


class SyncEngine:
    def __init__(
        self,
        db: BraidDB,
        remote: RemoteTracker,
        *,
        retry: RetryPolicy | None = None,
        error_budget: int = 5,
        debounce_seconds: float = 0.5,
        delivery_retention_days: int = 30,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.db = db
        self.remote = remote
        self.retry = retry or RetryPolicy()
        self.error_budget = error_budget
        self.debounce_seconds = debounce_seconds
        self.delivery_retention_days = delivery_retention_days
        self._sleep = sleep
        self._issue_locks: dict[str, _KeyedLock] = {}
        self._creation_locks: dict[str, _KeyedLock] = {}
        self._cancelled: dict[str, asyncio.Event] = {}
        self._debouncers: dict[str, ChangeDebouncer] = {}

    # -- Locks and cancellation ----------------------------------------------

    @contextlib.asynccontextmanager
    async def _hold(self, registry: dict[str, _KeyedLock], key: str) -> AsyncIterator[None]:
        """Hold the lock for *key*; the entry is dropped once nobody holds or waits on it."""
        entry = registry.get(key)
        if entry is None:
            entry = registry[key] = _KeyedLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del registry[key]

    def _issue_lock(self, installation_id: str, local_id: str) -> contextlib.AbstractAsyncContextManager[None]:
        return self._hold(self._issue_locks, f"{installation_id}:{local_id}")

    def _creation_lock(self, installation_id: str) -> contextlib.AbstractAsyncContextManager[None]:
        return self._hold(self._creation_locks, installation_id)

    def cancel(self, installation_id: str) -> None:
        """Stop a running full pass after the issue currently in flight."""
        self._cancelled.setdefault(installation_id, asyncio.Event()).set()
        logger.info("Cancellation requested", extra={"installation": installation_id})

    def _is_cancelled(self, installation_id: str) -> bool:
        event = self._cancelled.get(installation_id)
        return event is not None and event.is_set()

    # -- Helpers ---------------------------------------------------------------

    def _local_id_for(self, installation_id: str) -> Callable[[int], str | None]:
        def lookup(number: int) -> str | None:
            mapping = self.db.get_mapping_by_remote(installation_id, number)
            return mapping.local_id if mapping else None

        return lookup

    def _remote_number_for(self, installation_id: str) -> Callable[[str], int | None]:
        def lookup(local_id: str) -> int | None:
            mapping = self.db.get_mapping(installation_id, local_id)
            return mapping.remote_number if mapping else None

        return lookup

    async def _call_remote(self, what: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        return await with_retry(operation, self.retry, what=what, sleep=self._sleep)

    # -- Per-issue reconciliation ----------------------------------------------

    async def _reconcile_pair(
        self,
        installation: Installation,
        config: ConventionConfig,
        local_id: str,
        remote_issue: RemoteIssue,
        result: SyncResult,
    ) -> None:
        """Resolve one mapped pair and apply the write-set. Caller holds the issue lock."""
        for _attempt in range(STALE_MAPPING_RETRIES):
            mapping = self.db.get_mapping(installation.id, local_id)
            if mapping is None:
                msg = f"Mapping for {local_id} disappeared during reconciliation"
                raise MappingError(msg)
            try:
                local = self.db.get_issue(local_id)
            except KeyError as exc:
                msg = f"Mapped local issue {local_id} (#{mapping.remote_number}) no longer exists"
                raise MappingError(msg) from exc

            converted = remote_to_issue(
                remote_issue,
                config,
                issue_id=local_id,
                local_id_for=self._local_id_for(installation.id),
                owner=installation.owner,
                repo=installation.repo,
            )
            resolution = resolve(local, converted.issue, mapping, installation.conflict_strategy)

            remote_after = remote_issue
            wrote_remote = False
            if resolution.remote_write:
                payload = issue_to_remote(
                    resolution.merged,
                    config,
                    remote_number_for=self._remote_number_for(installation.id),
                    unresolved=converted.unresolved,
                )
                if payload.differs_from(remote_issue):
                    remote_after = await self._call_remote(
                        f"update #{remote_issue.number}",
                        lambda p=payload: self.remote.update_issue(
                            installation.owner, installation.repo, remote_issue.number, p
                        ),
                    )
                    wrote_remote = True

            wrote_local = False
            if resolution.local_write:
                winner_ts = converted.issue.updated_at if resolution.winner == "remote" else local.updated_at
                merged = resolution.merged.copy(closed_at=_iso(resolution.merged.closed_at))
                self.db.apply_merged(merged, updated_at=_iso(winner_ts) or local.updated_at, actor=SYNC_ACTOR)
                wrote_local = True

            if not wrote_local and not wrote_remote and resolution.winner is None:
                return

            refreshed = self.db.get_issue(local_id)
            try:
                self.db.update_mapping(
                    mapping,
                    local_updated_at=refreshed.updated_at,
                    remote_updated_at=_later(remote_after.updated_at, mapping.remote_updated_at),
                    remote_url=remote_after.html_url or None,
                )
            except StaleMappingError:
                logger.info("Mapping for %s changed concurrently, re-reading", local_id, extra={"issue_id": local_id})
                continue

            if resolution.conflict:
                result.conflicts.append(local_id)
            if wrote_local or wrote_remote:
                result.updated.append(local_id)
            logger.debug(
                "Reconciled %s <-> #%d (winner=%s, local_write=%s, remote_write=%s)",
                local_id,
                remote_issue.number,
                resolution.winner,
                wrote_local,
                wrote_remote,
                extra={"installation": installation.id, "issue_id": local_id},
            )
            return

        msg = f"Mapping for {local_id} kept changing; gave up after {STALE_MAPPING_RETRIES} attempts"
        raise StaleMappingError(msg)

    async def _create_local(
        self,
        installation: Installation,
        config: ConventionConfig,
        remote_issue: RemoteIssue,
        result: SyncResult,
    ) -> str | None:
        """Create the local counterpart of an unmapped remote issue. Caller holds the creation lock.

        A local issue that already points at the remote URL is adopted instead;
        its ID is returned so the caller reconciles the new pair.
        """
        converted = remote_to_issue(
            remote_issue,
            config,
            local_id_for=self._local_id_for(installation.id),
            owner=installation.owner,
            repo=installation.repo,
        )
        incoming = converted.issue
        existing = self.db.find_by_external_url(incoming.external_ref.url if incoming.external_ref else "")
        if existing is not None and self.db.get_mapping(installation.id, existing.id) is None:
            # A local issue already points at this remote issue: pair them and reconcile.
            self.db.create_mapping(installation.id, existing.id, remote_issue.number, remote_url=remote_issue.html_url)
            logger.info("Adopted %s for #%d", existing.id, remote_issue.number, extra={"installation": installation.id})
            return existing.id

        if not installation.create_local:
            result.skipped.append(f"#{remote_issue.number}")
            return None

        try:
            local = self.db.create_issue(
                incoming.title or f"#{remote_issue.number}",
                body=incoming.body,
                status=incoming.status,
                type=incoming.type,
                priority=incoming.priority,
                parent_id=incoming.parent_id,
                labels=incoming.labels,
                assignees=incoming.assignees,
                external_ref=incoming.external_ref,
                created_at=_iso(incoming.created_at),
                updated_at=_iso(incoming.updated_at),
                actor=SYNC_ACTOR,
                commit=False,
            )
            self.db.create_mapping(
                installation.id,
                local.id,
                remote_issue.number,
                remote_url=remote_issue.html_url,
                local_updated_at=local.updated_at,
                remote_updated_at=remote_issue.updated_at,
            )
        except Exception:
            self.db.conn.rollback()
            raise
        self.db.set_relations(local.id, depends_on=incoming.depends_on, blocks=incoming.blocks, actor=SYNC_ACTOR)
        result.created.append(local.id)
        logger.info(
            "Created %s from #%d",
            local.id,
            remote_issue.number,
            extra={"installation": installation.id, "issue_id": local.id},
        )
        return None

    async def _reconcile_remote(
        self,
        installation: Installation,
        config: ConventionConfig,
        remote_issue: RemoteIssue,
        result: SyncResult,
    ) -> None:
        mapping = self.db.get_mapping_by_remote(installation.id, remote_issue.number)
        if mapping is None:
            async with self._creation_lock(installation.id):
                # Re-check: this may be the echo of an issue we created ourselves.
                mapping = self.db.get_mapping_by_remote(installation.id, remote_issue.number)
                if mapping is None:
                    adopted = await self._create_local(installation, config, remote_issue, result)
                    if adopted is None:
                        return
                    mapping = self.db.get_mapping(installation.id, adopted)
                    if mapping is None:
                        return
        async with self._issue_lock(installation.id, mapping.local_id):
            await self._reconcile_pair(installation, config, mapping.local_id, remote_issue, result)

    async def _push_local(
        self,
        installation: Installation,
        config: ConventionConfig,
        issue: Issue,
        result: SyncResult,
    ) -> None:
        """Create the remote counterpart of an unmapped local issue."""
        if not installation.create_remote:
            result.skipped.append(issue.id)
            return
        async with self._creation_lock(installation.id), self._issue_lock(installation.id, issue.id):
            if self.db.get_mapping(installation.id, issue.id) is not None:
                return
            payload = issue_to_remote(issue, config, remote_number_for=self._remote_number_for(installation.id))
            created: RemoteIssue = await self._call_remote(
                f"create {issue.id}",
                lambda: self.remote.create_issue(installation.owner, installation.repo, payload),
            )
            ref = ExternalRef(number=created.number, url=created.html_url)
            self.db.update_issue(issue.id, external_ref=ref, updated_at=issue.updated_at, actor=SYNC_ACTOR, commit=False)
            self.db.create_mapping(
                installation.id,
                issue.id,
                created.number,
                remote_url=created.html_url,
                local_updated_at=issue.updated_at,
                remote_updated_at=created.updated_at,
            )
        result.created.append(issue.id)
        logger.info(
            "Created #%d from %s",
            created.number,
            issue.id,
            extra={"installation": installation.id, "issue_id": issue.id},
        )

    async def _guarded(self, result: SyncResult, ref: str, work: Awaitable[None]) -> None:
        """Run one issue's reconciliation to completion, recording per-issue failures.

        The work is shielded so cancelling the surrounding pass never
        interrupts a half-applied write.
        """
        try:
            await asyncio.shield(work)
        except (ValueError, RemoteAPIError) as exc:
            result.add_error(ref, exc)
            logger.warning("Skipped %s: %s", ref, exc, extra={"issue_id": ref, "error": str(exc)})

    # -- Webhook path ----------------------------------------------------------

    async def process_webhook_event(self, installation: Installation, event: NormalizedEvent) -> SyncResult:
        """Apply one delivery. A delivery ID that was already processed is a no-op."""
        result = SyncResult(installation_id=installation.id)
        extra = {"installation": installation.id, "delivery_id": event.delivery_id}
        if not self.db.claim_delivery(installation.id, event.delivery_id):
            logger.info("Duplicate delivery ignored", extra=extra)
            result.skipped.append(event.delivery_id)
            return result

        started = time.monotonic()
        try:
            if event.event == "issues" and event.action in HANDLED_ISSUE_ACTIONS:
                remote_issue = event.issue
                if remote_issue is None:
                    raise WebhookError(400, "Issue event without an issue payload")
                self.db.mark_syncing(installation.id)
                config = installation.convention_config()
                ref = f"#{remote_issue.number}"
                try:
                    await asyncio.shield(self._reconcile_remote(installation, config, remote_issue, result))
                except ValueError as exc:
                    # Mapping or validation problem: skip this issue, keep the delivery.
                    result.add_error(ref, exc)
                if result.errors:
                    self.db.mark_sync_error(installation.id, result.errors[-1]["error"])
                else:
                    self.db.mark_sync_success(installation.id)
            elif event.event == "issues" and event.action == "deleted":
                # The local issue is kept; its mapping stays as history.
                result.skipped.append(event.delivery_id)
            elif event.event != "ping":
                result.skipped.append(event.delivery_id)
        except Exception as exc:
            self.db.release_delivery(installation.id, event.delivery_id)
            if not isinstance(exc, WebhookError):
                self.db.mark_sync_error(installation.id, str(exc))
            raise

        self.db.record_delivery_processed(installation.id, event.delivery_id)
        logger.info(
            "Processed %s.%s",
            event.event,
            event.action or "-",
            extra={**extra, "duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return result

    # -- Full reconciliation ---------------------------------------------------

    async def full_sync(self, installation: Installation) -> SyncResult:
        """Reconcile every issue of *installation* on both sides.

        Raises ``SyncFailedError`` once consecutive failed passes reach the
        error budget. Earlier failures are recorded on the sync state and
        retried naturally by the next pass.
        """
        result = SyncResult(installation_id=installation.id)
        self._cancelled[installation.id] = asyncio.Event()
        config = installation.convention_config()
        started = time.monotonic()
        self.db.mark_syncing(installation.id)

        try:
            remote_issues: list[RemoteIssue] = await self._call_remote(
                "list issues",
                lambda: self.remote.list_issues(installation.owner, installation.repo, state="all"),
            )
        except RemoteAPIError as exc:
            result.add_error(f"{installation.owner}/{installation.repo}", exc)
            self._finish_pass(installation, result)
            return result
        except Exception as exc:
            self._abort_pass(installation, exc)
            raise

        by_number = {r.number: r for r in remote_issues}

        try:
            # Phase 1: remote issues with no counterpart yet.
            for remote_issue in remote_issues:
                if self._is_cancelled(installation.id):
                    break
                if self.db.get_mapping_by_remote(installation.id, remote_issue.number) is None:
                    await self._guarded(
                        result,
                        f"#{remote_issue.number}",
                        self._reconcile_remote(installation, config, remote_issue, result),
                    )

            # Phase 1b: local issues with no counterpart yet.
            for issue in self.db.list_all_issues():
                if self._is_cancelled(installation.id):
                    break
                if self.db.get_mapping(installation.id, issue.id) is None:
                    await self._guarded(result, issue.id, self._push_local(installation, config, issue, result))

            # Phase 2: every pair.
            for mapping in self.db.list_mappings(installation.id):
                if self._is_cancelled(installation.id):
                    break
                await self._guarded(result, mapping.local_id, self._sync_mapped(installation, config, mapping, by_number, result))
        except asyncio.CancelledError:
            self.db.mark_sync_success(installation.id)
            logger.info("Full sync task cancelled", extra={"installation": installation.id})
            raise
        except Exception as exc:
            self._abort_pass(installation, exc)
            raise
        result.cancelled = self._is_cancelled(installation.id)

        self._finish_pass(installation, result)
        logger.info(
            "Full sync: %d created, %d updated, %d conflicts, %d errors%s",
            len(result.created),
            len(result.updated),
            len(result.conflicts),
            len(result.errors),
            " (cancelled)" if result.cancelled else "",
            extra={"installation": installation.id, "duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return result

    async def _sync_mapped(
        self,
        installation: Installation,
        config: ConventionConfig,
        mapping: IssueMapping,
        by_number: dict[int, RemoteIssue],
        result: SyncResult,
    ) -> None:
        remote_issue = by_number.get(mapping.remote_number)
        if remote_issue is None:
            remote_issue = await self._call_remote(
                f"get #{mapping.remote_number}",
                lambda: self.remote.get_issue(installation.owner, installation.repo, mapping.remote_number),
            )
        async with self._issue_lock(installation.id, mapping.local_id):
            await self._reconcile_pair(installation, config, mapping.local_id, remote_issue, result)

    def _abort_pass(self, installation: Installation, exc: Exception) -> None:
        """Record an unexpected failure so the state never stays ``syncing``."""
        message = f"{type(exc).__name__}: {exc}"
        self.db.mark_sync_error(installation.id, message)
        logger.exception("Full sync aborted", extra={"installation": installation.id, "error": message})

    def _finish_pass(self, installation: Installation, result: SyncResult) -> None:
        if result.errors:
            summary = result.errors[0]["error"]
            if len(result.errors) > 1:
                summary += f" (+{len(result.errors) - 1} more)"
            state = self.db.mark_sync_error(installation.id, summary)
            if state.error_count >= self.error_budget:
                raise SyncFailedError(installation.id, state.error_count, summary)
        elif result.cancelled:
            self.db.mark_sync_success(installation.id)
        else:
            self.db.mark_sync_success(installation.id, full_pass=True, local_revision=self.db.local_revision())
            if self.delivery_retention_days > 0:
                cutoff = datetime.now(UTC) - timedelta(days=self.delivery_retention_days)
                self.db.prune_deliveries(installation.id, cutoff.isoformat())

    # -- Local change path -----------------------------------------------------

    async def reconcile_local(self, installation: Installation, issue_ids: Iterable[str]) -> SyncResult:
        """Push local changes for *issue_ids* (fetching each remote copy first)."""
        result = SyncResult(installation_id=installation.id)
        config = installation.convention_config()
        for issue_id in sorted(set(issue_ids)):
            mapping = self.db.get_mapping(installation.id, issue_id)
            if mapping is None:
                try:
                    issue = self.db.get_issue(issue_id)
                except KeyError:
                    result.skipped.append(issue_id)
                    continue
                await self._guarded(result, issue_id, self._push_local(installation, config, issue, result))
            else:
                await self._guarded(result, issue_id, self._sync_mapped(installation, config, mapping, {}, result))
        if result.errors:
            self.db.mark_sync_error(installation.id, result.errors[-1]["error"])
        return result

    def notify_local_change(self, installation: Installation, issue_ids: Iterable[str]) -> None:
        """Queue local changes; bursts are coalesced before ``reconcile_local`` runs."""
        debouncer = self._debouncers.get(installation.id)
        if debouncer is None:

            async def deliver(ids: set[str]) -> None:
                await self.reconcile_local(installation, ids)

            debouncer = ChangeDebouncer(deliver, delay=self.debounce_seconds)
            self._debouncers[installation.id] = debouncer
        debouncer.notify(issue_ids)

    async def aclose(self) -> None:
        """Deliver pending local changes."""
        for debouncer in self._debouncers.values():
            await debouncer.close()
        self._debouncers.clear()
