"""
Mirrors of the provider backend's entities (platforms, API keys, models).
"""

from enum import IntEnum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Model id used for models that are not persisted yet
UNSAVED_MODEL_ID = -1


class HealthStatus(IntEnum):
    """Health as reported by the backend when `include=health` is requested"""
    UNKNOWN = 0
    AVAILABLE = 1
    WARNING = 2
    UNAVAILABLE = 3


class RateLimitConfig(BaseModel):
    rpm: int = 0
    tpm: int = 0


class Platform(BaseModel):
    """A configured upstream LLM provider"""
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    format: str  # "OpenAI", "Ollama", "Azure OpenAI", "Gemini", "Anthropic"
    base_url: str
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    custom_headers: Optional[Dict[str, str]] = None
    health_status: Optional[HealthStatus] = None


class ApiKey(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    platform_id: int = 0
    value: str = ""
    health_status: Optional[HealthStatus] = None


class ApiKeyLink(BaseModel):
    """Reference to a key from a model's `api_keys` list"""
    model_config = ConfigDict(extra="ignore")

    id: int


class Model(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int = UNSAVED_MODEL_ID
    platform_id: int = 0
    name: str
    alias: str = ""
    api_keys: List[ApiKeyLink] = Field(default_factory=list)
    is_dirty: bool = False
    health_status: Optional[HealthStatus] = None

    @property
    def is_persisted(self) -> bool:
        return self.id > 0

    @property
    def key_ids(self) -> List[int]:
        return [k.id for k in self.api_keys]


class DiscoveredModel(BaseModel):
    """A model as listed by a provider's own API, normalized"""
    name: str
    alias: str = ""
