"""
Applying a model diff to a platform that already exists in the backend.
"""

import logging
from dataclasses import dataclass, field
from typing import AbstractSet, List, Optional, Sequence

from providerhub.models.batch import DiffType, MergedModel, ModelDiff
from providerhub.services.backend_client import BackendClient
from providerhub.services.sequencer import resolve_key_ids
from providerhub.utils.exceptions import CreationError

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    added_count: int = 0
    removed_count: int = 0
    updated_count: int = 0
    errors: List[str] = field(default_factory=list)


def _pick(
    diffs: Sequence[ModelDiff], diff_type: DiffType, names: Optional[AbstractSet[str]]
) -> List[MergedModel]:
    return [
        d.model for d in diffs
        if d.type == diff_type and (names is None or d.model.name in names)
    ]


async def apply_model_diff(
    backend: BackendClient,
    platform_id: int,
    diffs: Sequence[ModelDiff],
    selected: Optional[AbstractSet[str]] = None,
    removed: Optional[AbstractSet[str]] = None,
) -> ApplyResult:
    """
    Delete removed models, create added ones and re-associate updated ones.

    Every mutation is attempted even if an earlier one failed; failures are
    collected in ApplyResult.errors instead of being raised.

    Args:
        backend: Backend client
        platform_id: Platform the models belong to
        diffs: Output of calculate_model_diff
        selected: Names of added/updated models to apply (None applies all)
        removed: Names of removed models to delete (None deletes all)
    """
    result = ApplyResult()

    to_delete = [m.persisted_id for m in _pick(diffs, DiffType.REMOVED, removed) if m.persisted_id and m.persisted_id > 0]
    if to_delete:
        try:
            if len(to_delete) == 1:
                await backend.delete_model(platform_id, to_delete[0])
                result.removed_count = 1
            else:
                result.removed_count = await backend.delete_models_batch(platform_id, to_delete)
        except CreationError as e:
            logger.warning(f"Failed to delete models {to_delete} on platform {platform_id}: {e}")
            result.errors.append(f"delete {len(to_delete)} model(s): {e}")

    for model in _pick(diffs, DiffType.ADDED, selected):
        if not model.key_ids:
            continue
        try:
            await backend.create_model(platform_id, model.name, model.alias, resolve_key_ids(model.key_ids, ()))
            result.added_count += 1
        except CreationError as e:
            logger.warning(f"Failed to create model {model.name}: {e}")
            result.errors.append(f"create {model.name}: {e}")

    for model in _pick(diffs, DiffType.UPDATED, selected):
        try:
            await backend.update_model(
                platform_id, model.persisted_id, model.name, model.alias, resolve_key_ids(model.key_ids, ())
            )
            result.updated_count += 1
        except CreationError as e:
            logger.warning(f"Failed to update model {model.name}: {e}")
            result.errors.append(f"update {model.name}: {e}")

    logger.info(
        f"Applied model changes to platform {platform_id}: +{result.added_count} "
        f"-{result.removed_count} ~{result.updated_count} ({len(result.errors)} failed)"
    )
    return result
