"""
Classification of merged models against the models already persisted.
"""

from typing import Dict, List, Sequence

from providerhub.models.batch import (
    DiffType,
    KeyChange,
    MergedModel,
    ModelDiff,
    PersistedKey,
    sorted_key_refs,
)
from providerhub.models.entities import Model


def _as_merged(model: Model) -> MergedModel:
    return MergedModel(
        name=model.name,
        alias=model.alias or model.name,
        key_ids={PersistedKey(key_id) for key_id in model.key_ids},
        is_new=False,
        persisted_id=model.id,
        platform_id=model.platform_id or None,
    )


def calculate_model_diff(
    existing_models: Sequence[Model],
    merged_models: Sequence[MergedModel],
) -> List[ModelDiff]:
    """
    Classify every model name into added, removed, updated or unchanged.

    A merged model left with no key associations counts as removed even if
    its name survived the merge. Removed entries come first, then added,
    updated and unchanged.
    """
    existing_by_name: Dict[str, Model] = {m.name: m for m in existing_models}
    merged_by_name: Dict[str, MergedModel] = {m.name: m for m in merged_models}

    removed: List[ModelDiff] = []
    added: List[ModelDiff] = []
    updated: List[ModelDiff] = []
    unchanged: List[ModelDiff] = []

    for name, existing in existing_by_name.items():
        candidate = merged_by_name.get(name)
        if candidate is None or not candidate.key_ids:
            removed.append(ModelDiff(type=DiffType.REMOVED, model=_as_merged(existing)))

    for name, candidate in merged_by_name.items():
        existing = existing_by_name.get(name)
        if existing is None:
            added.append(ModelDiff(type=DiffType.ADDED, model=candidate))
            continue
        if not candidate.key_ids:
            continue  # already reported as removed

        old_keys = {PersistedKey(key_id) for key_id in existing.key_ids}
        if old_keys == candidate.key_ids:
            unchanged.append(ModelDiff(type=DiffType.UNCHANGED, model=candidate))
        else:
            updated.append(
                ModelDiff(
                    type=DiffType.UPDATED,
                    model=candidate,
                    key_change=KeyChange(
                        added=sorted_key_refs(candidate.key_ids - old_keys),
                        removed=sorted_key_refs(old_keys - candidate.key_ids),
                    ),
                )
            )

    return removed + added + updated + unchanged


def has_changes(diffs: Sequence[ModelDiff]) -> bool:
    return any(d.type != DiffType.UNCHANGED for d in diffs)


def diffs_of_type(diffs: Sequence[ModelDiff], diff_type: DiffType) -> List[ModelDiff]:
    return [d for d in diffs if d.type == diff_type]
