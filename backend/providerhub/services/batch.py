"""
Batch orchestration: runs import records or platform updates one at a time
through fetch -> merge -> rename -> diff -> (confirm) -> persist.

Usage:
    orchestrator = ImportOrchestrator(backend, fetcher)
    await orchestrator.process_all(parse_import_text(text))
    if orchestrator.has_failed_items:
        await orchestrator.retry_failed()
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AbstractSet, Dict, Iterable, List, Optional, Sequence

from providerhub.config import settings
from providerhub.models.batch import (
    BatchEntry,
    BatchProgress,
    BatchUpdateResult,
    CreationState,
    Credential,
    DiffDecision,
    DiffType,
    FailedStage,
    ImportRecord,
    KeyStatus,
    MergedModel,
    ModelDiff,
    PendingKey,
    PersistedKey,
    ProviderDefinition,
    RecordStatus,
)
from providerhub.services.backend_client import BackendClient
from providerhub.services.import_parser import INVALID_LINE_ERROR
from providerhub.services.key_fetcher import MultiKeyModelFetcher
from providerhub.services.model_diff import calculate_model_diff, diffs_of_type, has_changes
from providerhub.services.model_merge import merge_models_by_key
from providerhub.services.model_sync import apply_model_diff
from providerhub.services.sequencer import ResumableCreationSequencer, attribute_failure
from providerhub.utils import apply_rules_to_name, generate_temp_id
from providerhub.utils.exceptions import (
    BackendError,
    CreationError,
    ParseError,
    ProviderHubError,
    StageFailure,
    UserCancelled,
)
from providerhub.utils.rename import RenameRule

logger = logging.getLogger(__name__)


@dataclass
class PendingConfirmation:
    """An entry parked until someone confirms or cancels its diff"""
    entry_id: int
    diffs: List[ModelDiff]
    future: asyncio.Future


class BatchOrchestrator(ABC):
    """Shared driver for batch runs.

    Entries are processed sequentially. An exception raised while
    processing one entry marks that entry Failed and the run moves on.
    Subclasses implement `_process` for their entry type.
    """

    kind = "batch"

    def __init__(
        self,
        backend: BackendClient,
        fetcher: MultiKeyModelFetcher,
        *,
        auto_confirm: Optional[bool] = None,
        auto_rename: Optional[bool] = None,
        rename_rules: Optional[Sequence[RenameRule]] = None,
    ):
        self._backend = backend
        self._fetcher = fetcher
        self.auto_confirm = settings.auto_confirm if auto_confirm is None else auto_confirm
        self.auto_rename = settings.auto_rename if auto_rename is None else auto_rename
        self.rename_rules = list(settings.rename_rules if rename_rules is None else rename_rules)
        self.entries: List[BatchEntry] = []
        self._pending: Dict[int, PendingConfirmation] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def has_failed_items(self) -> bool:
        return any(e.status == RecordStatus.FAILED for e in self.entries)

    @property
    def progress(self) -> BatchProgress:
        progress = BatchProgress(total_entries=len(self.entries))
        for entry in self.entries:
            progress.total_keys += entry.expected_key_count
            progress.completed_keys += sum(1 for r in entry.key_results if r.status != KeyStatus.PENDING)
            if entry.status in (RecordStatus.SUCCESS, RecordStatus.FAILED):
                progress.completed_entries += 1
        return progress

    @property
    def pending_decisions(self) -> Dict[int, List[ModelDiff]]:
        """Diffs waiting for a decision, by entry id."""
        return {entry_id: p.diffs for entry_id, p in self._pending.items() if not p.future.done()}

    def get_entry(self, entry_id: int) -> Optional[BatchEntry]:
        for entry in self.entries:
            if entry.entry_id == entry_id:
                return entry
        return None

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def process_all(self, entries: Optional[Iterable[BatchEntry]] = None) -> None:
        """
        Process every Pending entry in order.

        Args:
            entries: Replaces the current entry list when given
        """
        async with self._lock:
            if entries is not None:
                self.entries = list(entries)
            await self._run_pending()

    async def retry_failed(self) -> None:
        """Reset Failed entries to Pending and process them again.

        Import records keep their creation state, so whatever a previous
        attempt created is reused.
        """
        async with self._lock:
            failed = [e for e in self.entries if e.status == RecordStatus.FAILED]
            logger.info(f"Retrying {len(failed)} failed {self.kind} entries")
            for entry in failed:
                entry.status = RecordStatus.PENDING
            await self._run_pending()

    async def _run_pending(self) -> None:
        pending = [e for e in self.entries if e.status == RecordStatus.PENDING]
        logger.info(f"Processing {len(pending)} {self.kind} entries")
        for entry in pending:
            await self.process_entry(entry)

        failed = sum(1 for e in pending if e.status == RecordStatus.FAILED)
        logger.info(f"{self.kind.capitalize()} run finished: {len(pending) - failed} succeeded, {failed} failed")

    async def process_entry(self, entry: BatchEntry) -> None:
        """Run one entry to Success or Failed. Never raises for entry errors."""
        entry.reset_progress()
        entry.status = RecordStatus.IMPORTING
        try:
            await self._process(entry)
        except ProviderHubError as e:
            entry.status = RecordStatus.FAILED
            entry.error = self._describe_failure(entry, e)
            logger.warning(f"{self.kind.capitalize()} entry {entry.entry_id} failed: {entry.error}")
        except Exception as e:
            entry.status = RecordStatus.FAILED
            entry.error = self._describe_failure(entry, e)
            logger.exception(f"Unexpected error processing {self.kind} entry {entry.entry_id}")
        else:
            entry.status = RecordStatus.SUCCESS
        finally:
            self._pending.pop(entry.entry_id, None)

    @abstractmethod
    async def _process(self, entry: BatchEntry) -> None:
        pass

    def _describe_failure(self, entry: BatchEntry, error: Exception) -> str:
        return str(error) or type(error).__name__

    def _rename(self, merged: List[MergedModel]) -> None:
        if not self.auto_rename or not self.rename_rules:
            return
        for model in merged:
            renamed = apply_rules_to_name(model.name, self.rename_rules)
            if renamed != model.name:
                model.alias = renamed

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def _await_decision(self, entry: BatchEntry, diffs: List[ModelDiff]) -> DiffDecision:
        future = asyncio.get_running_loop().create_future()
        self._pending[entry.entry_id] = PendingConfirmation(entry.entry_id, diffs, future)
        logger.info(f"Entry {entry.entry_id} awaiting confirmation of {len(diffs)} model changes")
        try:
            return await future
        finally:
            self._pending.pop(entry.entry_id, None)

    def resolve(self, entry_id: int, decision: DiffDecision) -> bool:
        """
        Answer a pending confirmation.

        Returns:
            False when no decision is pending for the entry
        """
        pending = self._pending.get(entry_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(decision)
        return True

    def confirm(
        self,
        entry_id: int,
        selected: Optional[AbstractSet[str]] = None,
        removed: Optional[AbstractSet[str]] = None,
    ) -> bool:
        return self.resolve(
            entry_id,
            DiffDecision(
                confirmed=True,
                selected=set(selected) if selected is not None else None,
                removed=set(removed) if removed is not None else None,
            ),
        )

    def cancel(self, entry_id: int) -> bool:
        return self.resolve(entry_id, DiffDecision(confirmed=False))


class ImportOrchestrator(BatchOrchestrator):
    """Creates new platforms, keys and models from parsed import lines."""

    kind = "import"

    def __init__(self, backend: BackendClient, fetcher: MultiKeyModelFetcher, **options):
        super().__init__(backend, fetcher, **options)
        self._sequencer = ResumableCreationSequencer(backend)

    async def _process(self, record: ImportRecord) -> None:
        if record.parsed is None:
            raise ParseError(record.error or INVALID_LINE_ERROR)

        parsed = record.parsed
        if record.creation_state is None:
            record.creation_state = CreationState()
        state = record.creation_state
        state.failed_stage = None

        credentials = [
            Credential(ref=PendingKey(index=i, temp_id=generate_temp_id()), value=value)
            for i, value in enumerate(parsed.api_keys)
        ]
        try:
            results = await self._fetcher.fetch_all(
                parsed.to_definition(), credentials, on_update=record.record_key_result
            )
        except Exception:
            state.failed_stage = FailedStage.FETCH_MODELS
            raise

        merged = merge_models_by_key(results)
        self._rename(merged)
        added = [d.model for d in diffs_of_type(calculate_model_diff([], merged), DiffType.ADDED)]

        record.added_count = await self._sequencer.run(record, added)
        logger.info(f"Imported {parsed.name} (line {record.line}): {record.added_count} models")

    def _describe_failure(self, record: ImportRecord, error: Exception) -> str:
        if isinstance(error, StageFailure):
            return str(error)
        state = record.creation_state
        if state is not None and not isinstance(error, ParseError):
            return f"[{attribute_failure(state).value}] {error}"
        return super()._describe_failure(record, error)


class UpdateOrchestrator(BatchOrchestrator):
    """Refreshes the model lists of platforms that already exist."""

    kind = "update"

    async def _process(self, entry: BatchUpdateResult) -> None:
        platform = entry.platform

        try:
            keys = await self._backend.list_keys(platform.id)
        except BackendError as e:
            logger.warning(f"[{platform.name}] Could not load keys, fetching without credentials: {e}")
            keys = []
        existing = await self._backend.list_models(platform.id)

        credentials = [Credential(ref=PersistedKey(key.id), value=key.value or None) for key in keys]
        results = await self._fetcher.fetch_all(
            ProviderDefinition.from_platform(platform), credentials, on_update=entry.record_key_result
        )

        merged = merge_models_by_key(results, existing)
        self._rename(merged)
        diffs = calculate_model_diff(existing, merged)

        decision: Optional[DiffDecision] = None
        if not self.auto_confirm and any(m.is_persisted for m in existing):
            if not has_changes(diffs):
                logger.info(f"[{platform.name}] Models are up to date")
                return
            decision = await self._await_decision(entry, diffs)
            if not decision.confirmed:
                raise UserCancelled()

        result = await apply_model_diff(
            self._backend,
            platform.id,
            diffs,
            selected=decision.selected if decision else None,
            removed=decision.removed if decision else None,
        )
        entry.added_count = result.added_count
        entry.removed_count = result.removed_count
        entry.updated_count = result.updated_count
        if result.errors:
            raise CreationError("; ".join(result.errors))
