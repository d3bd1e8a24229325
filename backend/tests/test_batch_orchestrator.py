"""Tests for batch import and batch update orchestration."""

import asyncio

import pytest

from providerhub.models.batch import BatchEntry, BatchUpdateResult, DiffType, FailedStage, KeyStatus, RecordStatus
from providerhub.services.batch import BatchOrchestrator, ImportOrchestrator, UpdateOrchestrator
from providerhub.services.import_parser import parse_import_text
from providerhub.utils.rename import ReplaceRule

from conftest import PROVIDER_URL


def _import_orchestrator(backend, fetcher, **options):
    options.setdefault("auto_rename", False)
    return ImportOrchestrator(backend, fetcher, **options)


def _update_orchestrator(backend, fetcher, **options):
    options.setdefault("auto_rename", False)
    options.setdefault("auto_confirm", False)
    return UpdateOrchestrator(backend, fetcher, **options)


# ============================================================================
# Import
# ============================================================================


@pytest.mark.asyncio
async def test_import_creates_everything(backend, fetcher, fake_backend, fake_provider):
    fake_provider.set_models("sk-a", ["gpt-4", "gpt-4o"])
    fake_provider.set_models("sk-b", ["gpt-4"])
    orchestrator = _import_orchestrator(backend, fetcher)

    await orchestrator.process_all(parse_import_text(f"OpenAI,Main,{PROVIDER_URL},sk-a,sk-b"))

    record = orchestrator.entries[0]
    assert record.status == RecordStatus.SUCCESS
    assert record.added_count == 2
    key_a, key_b = record.creation_state.created_key_ids
    assert fake_backend.models_of(record.creation_state.platform_id) == {
        "gpt-4": sorted([key_a, key_b]),
        "gpt-4o": [key_a],
    }
    assert not orchestrator.has_failed_items


@pytest.mark.asyncio
async def test_import_partial_key_failure_still_succeeds(backend, fetcher, fake_backend, fake_provider):
    fake_provider.set_models("sk-good", ["gpt-4"])
    fake_provider.set_status("sk-bad", 401)
    orchestrator = _import_orchestrator(backend, fetcher)

    await orchestrator.process_all(parse_import_text(f"OpenAI,Main,{PROVIDER_URL},sk-good,sk-bad"))

    record = orchestrator.entries[0]
    assert record.status == RecordStatus.SUCCESS
    assert [r.status for r in record.key_results] == [KeyStatus.SUCCESS, KeyStatus.ERROR]
    good_key = record.creation_state.created_key_ids[0]
    assert fake_backend.models_of(record.creation_state.platform_id) == {"gpt-4": [good_key]}


@pytest.mark.asyncio
async def test_import_all_keys_failing_fails_before_creation(backend, fetcher, fake_backend, fake_provider):
    fake_provider.set_status("sk-a", 401)
    fake_provider.set_status("sk-b", 403)
    orchestrator = _import_orchestrator(backend, fetcher)

    await orchestrator.process_all(parse_import_text(f"OpenAI,Main,{PROVIDER_URL},sk-a,sk-b"))

    record = orchestrator.entries[0]
    assert record.status == RecordStatus.FAILED
    assert record.creation_state.failed_stage == FailedStage.FETCH_MODELS
    assert record.error == "[fetch_models] All credentials failed to retrieve models"
    assert fake_backend.platforms == {}


@pytest.mark.asyncio
async def test_import_continues_after_bad_lines(backend, fetcher, fake_backend, fake_provider):
    fake_provider.set_models("sk-a", ["gpt-4"])
    orchestrator = _import_orchestrator(backend, fetcher)

    await orchestrator.process_all(parse_import_text(f"garbage\nOpenAI,Main,{PROVIDER_URL},sk-a"))

    assert [r.status for r in orchestrator.entries] == [RecordStatus.FAILED, RecordStatus.SUCCESS]
    assert orchestrator.has_failed_items
    assert len(fake_backend.platforms) == 1


@pytest.mark.asyncio
async def test_import_retry_resumes_without_duplicates(backend, fetcher, fake_backend, fake_provider):
    fake_provider.set_models("sk-a", ["gpt-4"])
    fake_backend.fail("POST", r"/platforms/\d+/models/batch")
    orchestrator = _import_orchestrator(backend, fetcher)

    await orchestrator.process_all(parse_import_text(f"OpenAI,Main,{PROVIDER_URL},sk-a"))
    record = orchestrator.entries[0]
    assert record.status == RecordStatus.FAILED
    assert record.error.startswith("[models]")
    platform_id = record.creation_state.platform_id

    await orchestrator.retry_failed()

    assert record.status == RecordStatus.SUCCESS
    assert record.creation_state.platform_id == platform_id
    assert record.creation_state.failed_stage is None
    assert len(fake_backend.platforms) == 1
    assert len(fake_backend.keys) == 1
    assert list(fake_backend.models_of(platform_id)) == ["gpt-4"]


@pytest.mark.asyncio
async def test_import_without_keys_creates_platform_only(backend, fetcher, fake_backend, fake_provider):
    fake_provider.set_models(None, ["llama3"])
    orchestrator = _import_orchestrator(backend, fetcher)

    await orchestrator.process_all(parse_import_text(f"Ollama,Local,{PROVIDER_URL}"))

    record = orchestrator.entries[0]
    assert record.status == RecordStatus.SUCCESS
    assert record.added_count == 0
    assert len(fake_backend.platforms) == 1
    assert fake_backend.models == {}


@pytest.mark.asyncio
async def test_import_auto_rename_sets_alias(backend, fetcher, fake_backend, fake_provider):
    fake_provider.set_models("sk-a", ["gpt-4"])
    orchestrator = _import_orchestrator(
        backend, fetcher, auto_rename=True, rename_rules=[ReplaceRule(from_="gpt", to="GPT")]
    )

    await orchestrator.process_all(parse_import_text(f"OpenAI,Main,{PROVIDER_URL},sk-a"))

    (model,) = fake_backend.models.values()
    assert model["name"] == "gpt-4"
    assert model["alias"] == "GPT-4"


@pytest.mark.asyncio
async def test_import_progress(backend, fetcher, fake_provider):
    fake_provider.set_models("sk-a", ["gpt-4"])
    fake_provider.set_models("sk-b", ["gpt-4"])
    orchestrator = _import_orchestrator(backend, fetcher)
    orchestrator.entries = parse_import_text(f"OpenAI,A,{PROVIDER_URL},sk-a,sk-b\nbroken")

    before = orchestrator.progress
    assert (before.completed_keys, before.total_keys) == (0, 2)
    assert (before.completed_entries, before.total_entries) == (1, 2)

    await orchestrator.process_all()

    after = orchestrator.progress
    assert (after.completed_keys, after.total_keys) == (2, 2)
    assert after.completed_entries == 2
    assert after.percent == 100.0


# ============================================================================
# Update
# ============================================================================


async def _seed_platform(backend, fake_backend):
    """Platform with keys sk-1, sk-2 and models m1 [k1] and m2 [no keys]."""
    platform_id = fake_backend.add_platform("Main", "OpenAI", PROVIDER_URL)
    key_1 = fake_backend.add_key(platform_id, "sk-1")
    key_2 = fake_backend.add_key(platform_id, "sk-2")
    fake_backend.add_model(platform_id, "m1", [key_1])
    fake_backend.add_model(platform_id, "m2", [])
    platform = await backend.get_platform(platform_id)
    return platform, key_1, key_2


@pytest.mark.asyncio
async def test_update_waits_for_confirmation(backend, fetcher, fake_backend, fake_provider, wait_until):
    platform, key_1, key_2 = await _seed_platform(backend, fake_backend)
    fake_provider.set_models("sk-1", ["m1"])
    fake_provider.set_models("sk-2", ["m1", "m3"])
    orchestrator = _update_orchestrator(backend, fetcher)

    task = asyncio.create_task(orchestrator.process_all([BatchUpdateResult(platform=platform)]))
    await wait_until(lambda: platform.id in orchestrator.pending_decisions)

    entry = orchestrator.entries[0]
    assert entry.status == RecordStatus.IMPORTING
    types = {d.model.name: d.type for d in orchestrator.pending_decisions[platform.id]}
    assert types == {"m1": DiffType.UPDATED, "m2": DiffType.REMOVED, "m3": DiffType.ADDED}

    assert orchestrator.confirm(platform.id)
    await task

    assert entry.status == RecordStatus.SUCCESS
    assert (entry.added_count, entry.removed_count, entry.updated_count) == (1, 1, 1)
    assert fake_backend.models_of(platform.id) == {"m1": sorted([key_1, key_2]), "m3": [key_2]}
    assert orchestrator.pending_decisions == {}


@pytest.mark.asyncio
async def test_update_confirm_subset(backend, fetcher, fake_backend, fake_provider, wait_until):
    platform, key_1, key_2 = await _seed_platform(backend, fake_backend)
    fake_provider.set_models("sk-1", ["m1"])
    fake_provider.set_models("sk-2", ["m1", "m3"])
    orchestrator = _update_orchestrator(backend, fetcher)

    task = asyncio.create_task(orchestrator.process_all([BatchUpdateResult(platform=platform)]))
    await wait_until(lambda: platform.id in orchestrator.pending_decisions)
    orchestrator.confirm(platform.id, selected={"m3"}, removed=set())
    await task

    assert fake_backend.models_of(platform.id) == {"m1": [key_1], "m2": [], "m3": [key_2]}


@pytest.mark.asyncio
async def test_update_cancel_fails_only_that_entry(backend, fetcher, fake_backend, fake_provider, wait_until):
    platform, _, _ = await _seed_platform(backend, fake_backend)
    fresh_id = fake_backend.add_platform("Fresh", "OpenAI", PROVIDER_URL)
    fake_backend.add_key(fresh_id, "sk-fresh")
    fresh = await backend.get_platform(fresh_id)
    fake_provider.set_models("sk-1", ["m1", "m4"])
    fake_provider.set_models("sk-2", ["m1"])
    fake_provider.set_models("sk-fresh", ["f1"])
    orchestrator = _update_orchestrator(backend, fetcher)
    before = fake_backend.models_of(platform.id)

    task = asyncio.create_task(
        orchestrator.process_all([BatchUpdateResult(platform=platform), BatchUpdateResult(platform=fresh)])
    )
    await wait_until(lambda: platform.id in orchestrator.pending_decisions)
    assert orchestrator.cancel(platform.id)
    await task

    cancelled, updated = orchestrator.entries
    assert cancelled.status == RecordStatus.FAILED
    assert cancelled.error == "Cancelled by user"
    assert fake_backend.models_of(platform.id) == before
    # A platform without persisted models is applied without asking
    assert updated.status == RecordStatus.SUCCESS
    assert list(fake_backend.models_of(fresh_id)) == ["f1"]


@pytest.mark.asyncio
async def test_update_auto_confirm_applies_immediately(backend, fetcher, fake_backend, fake_provider):
    platform, key_1, key_2 = await _seed_platform(backend, fake_backend)
    fake_provider.set_models("sk-1", ["m1"])
    fake_provider.set_models("sk-2", ["m3"])
    orchestrator = _update_orchestrator(backend, fetcher, auto_confirm=True)

    await orchestrator.process_all([BatchUpdateResult(platform=platform)])

    entry = orchestrator.entries[0]
    assert entry.status == RecordStatus.SUCCESS
    assert fake_backend.models_of(platform.id) == {"m1": [key_1], "m3": [key_2]}


@pytest.mark.asyncio
async def test_update_without_changes_succeeds_with_zero_counts(backend, fetcher, fake_backend, fake_provider):
    platform_id = fake_backend.add_platform("Main", "OpenAI", PROVIDER_URL)
    key_id = fake_backend.add_key(platform_id, "sk-1")
    fake_backend.add_model(platform_id, "m1", [key_id])
    platform = await backend.get_platform(platform_id)
    fake_provider.set_models("sk-1", ["m1"])
    orchestrator = _update_orchestrator(backend, fetcher)

    await orchestrator.process_all([BatchUpdateResult(platform=platform)])

    entry = orchestrator.entries[0]
    assert entry.status == RecordStatus.SUCCESS
    assert (entry.added_count, entry.removed_count, entry.updated_count) == (0, 0, 0)
    assert fake_backend.count_calls("PUT") == 0


@pytest.mark.asyncio
async def test_update_key_list_failure_fetches_without_credentials(backend, fetcher, fake_backend, fake_provider):
    platform_id = fake_backend.add_platform("Local", "Ollama", PROVIDER_URL)
    platform = await backend.get_platform(platform_id)
    fake_backend.fail("GET", rf"/platforms/{platform_id}/keys")
    fake_provider.set_models(None, ["llama3"])
    orchestrator = _update_orchestrator(backend, fetcher)

    await orchestrator.process_all([BatchUpdateResult(platform=platform)])

    entry = orchestrator.entries[0]
    assert entry.status == RecordStatus.SUCCESS
    assert len(entry.key_results) == 1
    assert entry.key_results[0].key_preview == "no key required"


@pytest.mark.asyncio
async def test_update_mutation_failure_fails_entry_after_trying_the_rest(
    backend, fetcher, fake_backend, fake_provider
):
    platform, key_1, key_2 = await _seed_platform(backend, fake_backend)
    fake_provider.set_models("sk-1", ["m1"])
    fake_provider.set_models("sk-2", ["m1", "m3"])
    fake_backend.fail("PUT", rf"/platforms/{platform.id}/models/\d+")
    orchestrator = _update_orchestrator(backend, fetcher, auto_confirm=True)

    await orchestrator.process_all([BatchUpdateResult(platform=platform)])

    entry = orchestrator.entries[0]
    assert entry.status == RecordStatus.FAILED
    assert "update m1" in entry.error
    assert (entry.added_count, entry.removed_count, entry.updated_count) == (1, 1, 0)
    assert "m3" in fake_backend.models_of(platform.id)


@pytest.mark.asyncio
async def test_resolve_without_pending_decision(backend, fetcher):
    orchestrator = _update_orchestrator(backend, fetcher)
    assert orchestrator.confirm(42) is False
    assert orchestrator.cancel(42) is False


@pytest.mark.asyncio
async def test_base_classes_are_abstract(backend, fetcher):
    with pytest.raises(TypeError):
        BatchEntry()
    with pytest.raises(TypeError):
        BatchOrchestrator(backend, fetcher)
