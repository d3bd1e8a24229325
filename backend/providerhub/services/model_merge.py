"""
Merging of per-credential model lists into one list keyed by model name.
"""

from typing import Dict, List, Sequence

from providerhub.models.batch import KeyFetchResult, KeyStatus, MergedModel, PersistedKey
from providerhub.models.entities import Model


def merge_models_by_key(
    key_results: Sequence[KeyFetchResult],
    existing_models: Sequence[Model] = (),
) -> List[MergedModel]:
    """
    Merge models fetched with several credentials.

    Persisted models seed the merge with their current key associations.
    Every successful credential then adds itself to each model it listed;
    names not seen before become new models. Key associations are sets, so
    the result does not depend on the order of `key_results`.

    Args:
        key_results: Per-credential fetch outcomes; failed ones are ignored
        existing_models: Models already stored for the platform

    Returns:
        One MergedModel per distinct name
    """
    merged: Dict[str, MergedModel] = {}

    for model in existing_models:
        merged[model.name] = MergedModel(
            name=model.name,
            alias=model.alias or model.name,
            key_ids={PersistedKey(key_id) for key_id in model.key_ids},
            is_new=False,
            persisted_id=model.id,
            platform_id=model.platform_id or None,
        )

    for result in key_results:
        if result.status != KeyStatus.SUCCESS:
            continue
        for model in result.models:
            entry = merged.get(model.name)
            if entry is None:
                merged[model.name] = MergedModel(
                    name=model.name,
                    alias=model.alias or model.name,
                    key_ids={result.key_ref},
                    is_new=True,
                )
            else:
                entry.key_ids.add(result.key_ref)

    return list(merged.values())
