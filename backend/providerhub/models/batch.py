"""
Batch reconciliation models.

An import run turns text lines into ImportRecords; an update run wraps
existing platforms into BatchUpdateResults. Both are driven through the
same steps:

  fetch (per key) -> merge -> diff -> (confirm) -> persist

Keys are referenced through KeyRef, which is either a key already stored in
the backend (PersistedKey) or a credential that only exists in the import
line so far (PendingKey, addressed by its position in that line).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set, Tuple, Union

from providerhub.models.entities import DiscoveredModel, Platform


class RecordStatus(str, Enum):
    PENDING = "pending"
    IMPORTING = "importing"
    SUCCESS = "success"
    FAILED = "failed"


class KeyStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class FailedStage(str, Enum):
    FETCH_MODELS = "fetch_models"
    PLATFORM = "platform"
    KEYS = "keys"
    MODELS = "models"


class DiffType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


# ============================================================================
# Key references
# ============================================================================


@dataclass(frozen=True)
class PersistedKey:
    """A key stored in the backend"""
    id: int

    def __str__(self) -> str:
        return f"key:{self.id}"


@dataclass(frozen=True)
class PendingKey:
    """A credential not persisted yet; `index` is its position in the request"""
    index: int
    temp_id: str = field(default="", compare=False)

    def __str__(self) -> str:
        return f"pending:{self.index}"


KeyRef = Union[PersistedKey, PendingKey]

# Stand-in credential for providers that need no key (e.g. Ollama)
VIRTUAL_KEY = PersistedKey(0)


def key_ref_sort_key(ref: KeyRef) -> Tuple[int, int]:
    """Stable ordering for KeyRefs: persisted ids first, then pending indexes."""
    if isinstance(ref, PersistedKey):
        return (0, ref.id)
    return (1, ref.index)


def sorted_key_refs(refs) -> List[KeyRef]:
    return sorted(refs, key=key_ref_sort_key)


# ============================================================================
# Provider definitions and credentials
# ============================================================================


@dataclass(frozen=True)
class ProviderDefinition:
    """What the model fetcher needs to know about a provider"""
    format: str
    base_url: str
    name: str = ""
    custom_headers: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_platform(cls, platform: Platform) -> "ProviderDefinition":
        return cls(
            format=platform.format,
            base_url=platform.base_url,
            name=platform.name,
            custom_headers=tuple((platform.custom_headers or {}).items()),
        )


@dataclass(frozen=True)
class Credential:
    ref: KeyRef
    value: Optional[str]


@dataclass
class ParsedProvider:
    """Payload of one well-formed import line"""
    provider: str
    name: str
    base_url: str
    api_keys: List[str] = field(default_factory=list)

    def to_definition(self) -> ProviderDefinition:
        return ProviderDefinition(format=self.provider, base_url=self.base_url, name=self.name)


@dataclass
class CreationState:
    """What a previous attempt already created for an import record"""
    platform_id: Optional[int] = None
    # Position i holds the key created for credential i, None while it is missing
    created_key_ids: List[Optional[int]] = field(default_factory=list)
    failed_stage: Optional[FailedStage] = None


# ============================================================================
# Fetch, merge and diff artifacts
# ============================================================================


@dataclass(frozen=True)
class KeyFetchResult:
    """Outcome of listing models with one credential"""
    key_ref: KeyRef
    key_preview: str
    status: KeyStatus = KeyStatus.PENDING
    models: Tuple[DiscoveredModel, ...] = ()
    error: Optional[str] = None

    @property
    def model_names(self) -> List[str]:
        return [m.name for m in self.models]

    @property
    def model_count(self) -> int:
        return len(self.models)


@dataclass
class MergedModel:
    """One model name seen across every credential of a provider"""
    name: str
    alias: str
    key_ids: Set[KeyRef] = field(default_factory=set)
    is_new: bool = True
    persisted_id: Optional[int] = None
    platform_id: Optional[int] = None


@dataclass(frozen=True)
class KeyChange:
    added: List[KeyRef]
    removed: List[KeyRef]


@dataclass(frozen=True)
class ModelDiff:
    type: DiffType
    model: MergedModel
    key_change: Optional[KeyChange] = None


@dataclass
class DiffDecision:
    """
    Answer to a pending diff confirmation.

    `selected` limits the added/updated models to apply and `removed` the
    models to delete, both by model name; None applies the whole diff.
    """
    confirmed: bool
    selected: Optional[Set[str]] = None
    removed: Optional[Set[str]] = None


# ============================================================================
# Batch entries
# ============================================================================


@dataclass(kw_only=True)
class BatchEntry(ABC):
    """Common progress state of one entry in a batch run"""
    status: RecordStatus = RecordStatus.PENDING
    error: Optional[str] = None
    key_results: List[KeyFetchResult] = field(default_factory=list)
    added_count: int = 0
    removed_count: int = 0
    updated_count: int = 0

    @property
    @abstractmethod
    def entry_id(self) -> int:
        pass

    @property
    def expected_key_count(self) -> int:
        return max(1, len(self.key_results))

    def record_key_result(self, result: KeyFetchResult) -> None:
        """Insert or replace the progress row for one credential."""
        for i, existing in enumerate(self.key_results):
            if existing.key_ref == result.key_ref:
                self.key_results[i] = result
                return
        self.key_results.append(result)

    def reset_progress(self) -> None:
        self.error = None
        self.key_results = []
        self.added_count = 0
        self.removed_count = 0
        self.updated_count = 0


@dataclass(kw_only=True)
class ImportRecord(BatchEntry):
    """One parsed line of batch import text"""
    line: int
    raw_text: str
    parsed: Optional[ParsedProvider] = None
    creation_state: Optional[CreationState] = None

    @property
    def entry_id(self) -> int:
        return self.line

    @property
    def expected_key_count(self) -> int:
        if self.parsed is None:
            return 0
        return max(1, len(self.parsed.api_keys))


@dataclass(kw_only=True)
class BatchUpdateResult(BatchEntry):
    """An existing platform whose models are being refreshed"""
    platform: Platform

    @property
    def entry_id(self) -> int:
        return self.platform.id


@dataclass
class BatchProgress:
    completed_keys: int = 0
    total_keys: int = 0
    completed_entries: int = 0
    total_entries: int = 0

    @property
    def percent(self) -> float:
        if not self.total_keys:
            return 100.0 if self.completed_entries == self.total_entries else 0.0
        return round(self.completed_keys * 100.0 / self.total_keys, 1)

