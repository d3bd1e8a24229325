"""
Resumable creation of a new provider: platform, then keys, then models.

Progress is written into the record's CreationState as soon as each
resource exists, so a retry after a failure only creates what is missing:

    NotStarted -> PlatformCreated -> KeysCreated -> ModelsCreated

Any step can end in Failed(stage) instead.
"""

import logging
from typing import Iterable, List, Optional, Sequence

from providerhub.models.batch import (
    CreationState,
    FailedStage,
    ImportRecord,
    KeyRef,
    MergedModel,
    ParsedProvider,
    PendingKey,
    PersistedKey,
    sorted_key_refs,
)
from providerhub.services.backend_client import BackendClient, model_payload
from providerhub.utils.exceptions import BackendError, ParseError, StageFailure

logger = logging.getLogger(__name__)


def resolve_key_ids(refs: Iterable[KeyRef], created_key_ids: Sequence[Optional[int]]) -> List[int]:
    """
    Map key references to real backend key ids.

    A PendingKey resolves through its position in the request:
    created_key_ids[i] belongs to credential i, and None marks a key that
    does not exist (yet). PersistedKey(0) is the keyless stand-in and never
    resolves. Unresolvable references are dropped.
    """
    resolved: List[int] = []
    for ref in sorted_key_refs(refs):
        if isinstance(ref, PendingKey):
            if 0 <= ref.index < len(created_key_ids) and created_key_ids[ref.index] is not None:
                key_id = created_key_ids[ref.index]
            else:
                continue
        elif isinstance(ref, PersistedKey) and ref.id > 0:
            key_id = ref.id
        else:
            continue
        if key_id not in resolved:
            resolved.append(key_id)
    return resolved


def attribute_failure(state: CreationState) -> FailedStage:
    """
    Decide which stage a failure belongs to and record it on the state.

    A stage already marked as fetch_models is kept. Otherwise the stage is
    inferred from what exists: no platform yet means the platform stage
    failed, no keys yet means the keys stage, anything else the models stage.
    """
    if state.failed_stage != FailedStage.FETCH_MODELS:
        if state.platform_id is None:
            state.failed_stage = FailedStage.PLATFORM
        elif all(key_id is None for key_id in state.created_key_ids):
            state.failed_stage = FailedStage.KEYS
        else:
            state.failed_stage = FailedStage.MODELS
    return state.failed_stage


class ResumableCreationSequencer:
    """Persists an import record against the backend, stage by stage."""

    def __init__(self, backend: BackendClient):
        self._backend = backend

    async def run(self, record: ImportRecord, merged_models: Sequence[MergedModel]) -> int:
        """
        Create (or finish creating) the record's platform, keys and models.

        Args:
            record: Import record; its creation_state is created if missing and
                updated in place
            merged_models: Models to create, keyed to the record's credentials

        Returns:
            Number of models created

        Raises:
            StageFailure: A stage failed; `stage` names it and the record's
                creation_state.failed_stage is set accordingly
        """
        if record.parsed is None:
            raise ParseError(record.error or "Record has no parsed provider")
        if record.creation_state is None:
            record.creation_state = CreationState()

        parsed = record.parsed
        state = record.creation_state

        try:
            platform_id = await self._ensure_platform(parsed, state)
            key_ids = await self._ensure_keys(platform_id, parsed, state)
            created = await self._create_models(platform_id, parsed, merged_models, key_ids)
        except StageFailure:
            raise
        except Exception as e:
            stage = attribute_failure(state)
            logger.warning(f"[{parsed.name}] Creation failed at stage '{stage.value}': {e}")
            raise StageFailure(stage.value, e) from e

        state.failed_stage = None
        return created

    async def _ensure_platform(self, parsed: ParsedProvider, state: CreationState) -> int:
        if state.platform_id is not None:
            try:
                await self._backend.get_platform(state.platform_id)
                logger.info(f"[{parsed.name}] Reusing platform {state.platform_id} from previous attempt")
                return state.platform_id
            except BackendError as e:
                if e.status != 404:
                    # Reported as the platform stage whatever keys are already recorded
                    state.failed_stage = FailedStage.PLATFORM
                    logger.warning(
                        f"[{parsed.name}] Could not verify platform {state.platform_id}: {e}"
                    )
                    raise StageFailure(FailedStage.PLATFORM.value, e) from e
                logger.warning(
                    f"[{parsed.name}] Platform {state.platform_id} no longer exists; creating a new one"
                )
                state.platform_id = None
                state.created_key_ids = []

        platform = await self._backend.create_platform(
            name=parsed.name, format=parsed.provider, base_url=parsed.base_url
        )
        state.platform_id = platform.id
        logger.info(f"Created platform: {parsed.name} (id={platform.id}, format={parsed.provider})")
        return platform.id

    async def _ensure_keys(
        self, platform_id: int, parsed: ParsedProvider, state: CreationState
    ) -> List[Optional[int]]:
        # created_key_ids[i] is credential i; a vanished key leaves a None gap
        if any(key_id is not None for key_id in state.created_key_ids):
            present = {key.id for key in await self._backend.list_keys(platform_id)}
            validated = [key_id if key_id in present else None for key_id in state.created_key_ids]
            missing = sum(1 for old, new in zip(state.created_key_ids, validated) if old is not None and new is None)
            if missing:
                logger.warning(
                    f"[{parsed.name}] {missing} previously created key(s) are gone and will be recreated"
                )
            state.created_key_ids = validated

        for index, value in enumerate(parsed.api_keys):
            if index < len(state.created_key_ids) and state.created_key_ids[index] is not None:
                continue
            key = await self._backend.create_key(platform_id, value)
            if index < len(state.created_key_ids):
                state.created_key_ids[index] = key.id
            else:
                state.created_key_ids.append(key.id)
            logger.info(f"[{parsed.name}] Created key id={key.id} for credential {index} on platform {platform_id}")

        return list(state.created_key_ids)

    async def _create_models(
        self,
        platform_id: int,
        parsed: ParsedProvider,
        merged_models: Sequence[MergedModel],
        key_ids: Sequence[Optional[int]],
    ) -> int:
        payload = []
        for model in merged_models:
            resolved = resolve_key_ids(model.key_ids, key_ids)
            if not resolved:
                logger.debug(f"[{parsed.name}] Skipping model {model.name}: no resolvable keys")
                continue
            payload.append(model_payload(model.name, model.alias, resolved))

        if not payload:
            logger.info(f"[{parsed.name}] No models with usable keys to create")
            return 0

        created = await self._backend.create_models_batch(platform_id, payload)
        logger.info(f"[{parsed.name}] Created {created}/{len(payload)} models on platform {platform_id}")
        return created
