"""Router configuration: pydantic models plus YAML and environment loading.

Configuration Priority: Environment Variables > YAML > Defaults

Example YAML configuration (ai_router.yaml):

    router:
      default_timeout_ms: 30000
      circuit_breaker:
        failure_threshold: 5
        reset_timeout_ms: 60000
      cache:
        ttl_ms: 300000
        max_entries: 200
      batching:
        enabled: false
        batch_delay_ms: 1000
        batch_size: 5
      health:
        interval_ms: 60000
      providers:
        - id: gemini
          kind: openai_compatible
          base_url: https://generativelanguage.googleapis.com/v1beta/openai
          credential_ref: env:GEMINI_API_KEY
          capabilities: [text, vision]
          priority: 1
          models:
            text: gemini-2.0-flash
            vision: gemini-2.0-flash
        - id: openai
          credential_ref: env:OPENAI_API_KEY
          capabilities: [text, vision, image_gen]
          priority: 2

All settings are validated at startup; an invalid file fails fast with a
ConfigError instead of surfacing at the first routed request.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .types import Capability

_TRUE_VALUES = ("true", "1", "yes")


# =============================================================================
# Sub-configuration Models
# =============================================================================


class ProviderConfig(BaseModel):
    """Static configuration for one provider.

    Frozen for the process lifetime. The runtime ``enabled`` toggle lives in
    the CapabilityRegistry; ``enabled`` here is only the initial value.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    enabled: bool = True
    capabilities: FrozenSet[Capability] = Field(default_factory=frozenset)
    priority: int = 100
    credential_ref: Optional[str] = None
    kind: str = "openai_compatible"
    base_url: Optional[str] = None
    models: Dict[Capability, str] = Field(default_factory=dict)
    max_retries: int = Field(default=2, ge=0, le=10)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if v != v.strip():
            raise ValueError(f"provider id '{v}' has surrounding whitespace")
        return v

    @model_validator(mode="after")
    def models_within_capabilities(self) -> "ProviderConfig":
        """A model may only be configured for a declared capability."""
        extra = set(self.models) - set(self.capabilities)
        if extra:
            names = sorted(c.value for c in extra)
            raise ValueError(f"provider '{self.id}' has models for undeclared capabilities {names}")
        return self


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker tunables shared by every provider's breaker."""

    failure_threshold: int = Field(default=5, ge=1, le=1000)
    reset_timeout_ms: int = Field(default=60000, ge=0)


class CacheConfig(BaseModel):
    """Response cache tunables."""

    enabled: bool = True
    ttl_ms: int = Field(default=300000, ge=1)
    max_entries: int = Field(default=200, ge=1)


class BatchingConfig(BaseModel):
    """Batch submission tunables (opt-in)."""

    enabled: bool = False
    batch_delay_ms: int = Field(default=1000, ge=0)
    batch_size: int = Field(default=5, ge=1, le=100)


class HealthConfig(BaseModel):
    """Health monitor tunables."""

    enabled: bool = True
    interval_ms: int = Field(default=60000, ge=100)
    probe_timeout_ms: int = Field(default=10000, ge=1)
    slow_latency_ms: int = Field(default=5000, ge=1)
    latency_smoothing: float = Field(default=0.3, gt=0.0, le=1.0)
    disable_after_failures: int = Field(default=0, ge=0)


class RouterConfig(BaseModel):
    """Complete router configuration."""

    providers: List[ProviderConfig] = Field(default_factory=list)
    default_timeout_ms: int = Field(default=30000, ge=1)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    batching: BatchingConfig = Field(default_factory=BatchingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    event_history: int = Field(default=1000, ge=0)

    @model_validator(mode="after")
    def unique_provider_ids(self) -> "RouterConfig":
        seen = set()
        for provider in self.providers:
            if provider.id in seen:
                raise ValueError(f"duplicate provider id '{provider.id}'")
            seen.add(provider.id)
        return self

    def get_provider(self, provider_id: str) -> Optional[ProviderConfig]:
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize configuration to a plain dictionary."""
        return self.model_dump(mode="json", exclude_none=True)

    def to_yaml(self) -> str:
        """Serialize configuration to YAML string."""
        return yaml.dump({"router": self.to_dict()}, default_flow_style=False, sort_keys=False)


# =============================================================================
# Credentials
# =============================================================================


def resolve_credential(ref: Optional[str]) -> Optional[str]:
    """Resolve a credential reference to the secret it names.

    Supported forms:
        env:NAME   value of environment variable NAME
        NAME       bare environment variable name

    Returns:
        The secret, or None when the reference is empty or unset.
    """
    if not ref:
        return None
    name = ref[len("env:"):] if ref.startswith("env:") else ref
    value = os.environ.get(name)
    return value or None


# =============================================================================
# Configuration Loading Functions
# =============================================================================


_ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def _substitute_env_vars(value: Any) -> Any:
    """Expand ``${NAME}`` and ``${NAME:-fallback}`` in every string of a parsed YAML tree.

    Unset names without a fallback expand to the empty string.
    """
    if isinstance(value, dict):
        return {key: _substitute_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    if not isinstance(value, str):
        return value
    return _ENV_PATTERN.sub(lambda m: os.environ.get(m.group(1)) or (m.group(2) or ""), value)


def _build(data: Dict[str, Any]) -> RouterConfig:
    try:
        return RouterConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid router configuration: {e}") from e


def load_config(config_path: Optional[Path] = None, strict: bool = True) -> RouterConfig:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to YAML configuration file. If None or missing,
            returns defaults.
        strict: If True, raise ConfigError on invalid YAML or settings. If
            False, fall back to defaults.

    Returns:
        RouterConfig object

    Raises:
        ConfigError: If strict=True and configuration is invalid
    """
    if config_path is None or not config_path.exists():
        return RouterConfig()

    try:
        with open(config_path, "r") as f:
            raw_config = yaml.safe_load(f)

        if raw_config is None:
            return RouterConfig()
        if not isinstance(raw_config, dict):
            raise ConfigError("top-level YAML value must be a mapping")

        raw_config = _substitute_env_vars(raw_config)
        return _build(raw_config.get("router", {}) or {})

    except yaml.YAMLError as e:
        if strict:
            raise ConfigError(f"Invalid YAML: {e}") from e
        return RouterConfig()
    except ConfigError:
        if strict:
            raise
        return RouterConfig()


CONFIG_FILENAME = "ai_router.yaml"


def _config_search_path() -> List[Path]:
    """Candidate config files, highest precedence first."""
    candidates = []
    explicit = os.getenv("AI_ROUTER_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    candidates.append(Path.cwd() / CONFIG_FILENAME)
    candidates.append(Path.home() / ".config" / "ai-router" / CONFIG_FILENAME)
    return candidates


def _find_config_file() -> Optional[Path]:
    return next((path for path in _config_search_path() if path.is_file()), None)


_INT_OVERRIDES = {
    "AI_ROUTER_DEFAULT_TIMEOUT_MS": ("default_timeout_ms",),
    "AI_ROUTER_FAILURE_THRESHOLD": ("circuit_breaker", "failure_threshold"),
    "AI_ROUTER_RESET_TIMEOUT_MS": ("circuit_breaker", "reset_timeout_ms"),
    "AI_ROUTER_CACHE_TTL_MS": ("cache", "ttl_ms"),
    "AI_ROUTER_CACHE_MAX_ENTRIES": ("cache", "max_entries"),
    "AI_ROUTER_BATCH_DELAY_MS": ("batching", "batch_delay_ms"),
    "AI_ROUTER_BATCH_SIZE": ("batching", "batch_size"),
    "AI_ROUTER_HEALTH_INTERVAL_MS": ("health", "interval_ms"),
}

_BOOL_OVERRIDES = {
    "AI_ROUTER_CACHE_ENABLED": ("cache", "enabled"),
    "AI_ROUTER_BATCHING_ENABLED": ("batching", "enabled"),
    "AI_ROUTER_HEALTH_ENABLED": ("health", "enabled"),
}


def _apply_env_overrides(config: RouterConfig) -> RouterConfig:
    """Apply environment variable overrides to configuration.

    Environment variables take precedence over YAML configuration.
    """
    config_dict = config.model_dump()

    for env_var, path in _INT_OVERRIDES.items():
        raw = os.getenv(env_var)
        if not raw:
            continue
        try:
            value: Any = int(raw)
        except ValueError as e:
            raise ConfigError(f"{env_var} must be an integer, got '{raw}'") from e
        target = config_dict
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value

    for env_var, path in _BOOL_OVERRIDES.items():
        raw = os.getenv(env_var)
        if not raw:
            continue
        target = config_dict
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = raw.lower() in _TRUE_VALUES

    return _build(config_dict)


def get_effective_config(config_path: Optional[Path] = None) -> RouterConfig:
    """Get the effective configuration with all overrides applied.

    Loads ``.env`` first so credential references and ${VAR} substitutions
    can see its values.

    Args:
        config_path: Optional explicit path to configuration file.
            If None, searches standard locations.

    Returns:
        RouterConfig with all overrides applied
    """
    load_dotenv()

    if config_path is None:
        config_path = _find_config_file()

    config = load_config(config_path)
    return _apply_env_overrides(config)
