"""Configuration loading and validation for Agent Review."""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from agent_review.errors import ConfigError

DEFAULT_CONFIG_FILE = "agent-review.yaml"
EXAMPLE_CONFIG_FILE = "agent-review.example.yaml"

ENDPOINT_ENV = "AGENTREVIEW_AI_API_ENDPOINT"
API_KEY_ENV = "AGENTREVIEW_AI_API_KEY"

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 8


@dataclass
class ApiSettings:
    """Review service configuration."""

    endpoint: str = ""
    api_key: str = ""
    api_format: str = "openai"
    model: str = ""
    timeout_seconds: float = 30.0
    temperature: float = 0.7
    max_tokens: int = 8000
    retry_count: int = 3
    retry_delay_seconds: float = 1.0
    max_continuations: int = 3
    system_prompt: str | None = None


@dataclass
class BatchingSettings:
    """How units are grouped and sent."""

    mode: str = "count"
    batch_size: int = 5
    snippet_budget: int = 25
    weight_by: str = "count"
    strategy: str = "even"
    concurrency: int = 2
    max_request_chars: int = 50000
    max_split_depth: int = 3


@dataclass
class DedupSettings:
    """Similarity thresholds for deduplication."""

    same_line_threshold: float = 0.5
    proximity_threshold: float = 0.42
    line_window: int = 2
    same_severity_pick: str = "latest"


@dataclass
class ReviewPolicy:
    """How AI findings are reported."""

    action: str = "warning"
    use_diff_line_numbers: bool | None = None
    diff_only: bool = False
    include: list[str] = field(default_factory=lambda: ["**/*.py"])
    exclude: list[str] = field(default_factory=list)


@dataclass
class RootSettings:
    """Multi-root fan-out."""

    max_concurrency: int = 2
    repository_marker: str = ".git"


@dataclass
class Config:
    """Complete application configuration."""

    api: ApiSettings = field(default_factory=ApiSettings)
    batching: BatchingSettings = field(default_factory=BatchingSettings)
    dedup: DedupSettings = field(default_factory=DedupSettings)
    policy: ReviewPolicy = field(default_factory=ReviewPolicy)
    roots: RootSettings = field(default_factory=RootSettings)

    def to_dict(self, redact: bool = True) -> dict[str, Any]:
        """Plain dict view, with the API key masked by default."""
        data = asdict(self)
        if redact and data["api"]["api_key"]:
            data["api"]["api_key"] = "***"
        return data


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Path to config file (default: agent-review.yaml)

    Returns:
        Loaded configuration

    Raises:
        ConfigError: If the file can't be parsed or holds invalid values
    """
    if config_path is None:
        config_path = Path(DEFAULT_CONFIG_FILE)
        if not config_path.exists():
            config_path = Path(EXAMPLE_CONFIG_FILE)

    raw_config: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(raw_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping at the top level")

    raw_config = _expand_env_vars(raw_config)

    try:
        return _parse_config(raw_config)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand environment variables in config."""
    if isinstance(obj, str):
        if obj.startswith("${") and obj.endswith("}"):
            env_var = obj[2:-1]
            return os.environ.get(env_var, "")
        return obj
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _parse_config(raw: dict[str, Any]) -> Config:
    """Parse raw config dict into Config object."""
    # API settings
    api_raw = raw.get("api") or {}
    api = ApiSettings(
        endpoint=api_raw.get("endpoint") or os.environ.get(ENDPOINT_ENV, ""),
        api_key=api_raw.get("api_key") or os.environ.get(API_KEY_ENV, ""),
        api_format=str(api_raw.get("api_format", "openai")).lower(),
        model=api_raw.get("model", ""),
        timeout_seconds=float(api_raw.get("timeout_seconds", 30.0)),
        temperature=float(api_raw.get("temperature", 0.7)),
        max_tokens=int(api_raw.get("max_tokens", 8000)),
        retry_count=max(0, int(api_raw.get("retry_count", 3))),
        retry_delay_seconds=max(0.0, float(api_raw.get("retry_delay_seconds", 1.0))),
        max_continuations=max(0, int(api_raw.get("max_continuations", 3))),
        system_prompt=api_raw.get("system_prompt"),
    )

    # Batching settings
    batch_raw = raw.get("batching") or {}
    batching = BatchingSettings(
        mode=str(batch_raw.get("mode", "count")).lower(),
        batch_size=int(batch_raw.get("batch_size", 5)),
        snippet_budget=int(batch_raw.get("snippet_budget", 25)),
        weight_by=str(batch_raw.get("weight_by", "count")).lower(),
        strategy=str(batch_raw.get("strategy", "even")).lower(),
        concurrency=_clamp(int(batch_raw.get("concurrency", 2)), MIN_CONCURRENCY, MAX_CONCURRENCY),
        max_request_chars=int(batch_raw.get("max_request_chars", 50000)),
        max_split_depth=max(0, int(batch_raw.get("max_split_depth", 3))),
    )

    # Dedup settings
    dedup_raw = raw.get("dedup") or {}
    dedup = DedupSettings(
        same_line_threshold=float(dedup_raw.get("same_line_threshold", 0.5)),
        proximity_threshold=float(dedup_raw.get("proximity_threshold", 0.42)),
        line_window=max(0, int(dedup_raw.get("line_window", 2))),
        same_severity_pick=str(dedup_raw.get("same_severity_pick", "latest")).lower(),
    )

    # Review policy
    policy_raw = raw.get("policy") or {}
    policy = ReviewPolicy(
        action=str(policy_raw.get("action", "warning")).lower(),
        use_diff_line_numbers=policy_raw.get("use_diff_line_numbers"),
        diff_only=bool(policy_raw.get("diff_only", False)),
        include=list(policy_raw.get("include") or ["**/*.py"]),
        exclude=list(policy_raw.get("exclude") or []),
    )

    # Root settings
    roots_raw = raw.get("roots") or {}
    roots = RootSettings(
        max_concurrency=_clamp(int(roots_raw.get("max_concurrency", 2)), MIN_CONCURRENCY, MAX_CONCURRENCY),
        repository_marker=roots_raw.get("repository_marker", ".git"),
    )

    return Config(api=api, batching=batching, dedup=dedup, policy=policy, roots=roots)


def validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of errors.

    Args:
        config: Configuration to validate

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not config.api.endpoint:
        errors.append(f"Missing API endpoint (set {ENDPOINT_ENV} or api.endpoint)")

    if config.api.api_format not in ("openai", "custom"):
        errors.append(f"api.api_format must be 'openai' or 'custom', got {config.api.api_format!r}")

    if config.api.api_format == "openai":
        if not config.api.api_key:
            errors.append(f"Missing API key (set {API_KEY_ENV} or api.api_key)")
        if not config.api.model:
            errors.append("api.model is required for the openai format")

    if config.batching.mode not in ("count", "snippet"):
        errors.append(f"batching.mode must be 'count' or 'snippet', got {config.batching.mode!r}")

    if config.batching.weight_by not in ("count", "chars"):
        errors.append(f"batching.weight_by must be 'count' or 'chars', got {config.batching.weight_by!r}")

    if config.batching.strategy not in ("even", "contiguous"):
        errors.append(
            f"batching.strategy must be 'even' or 'contiguous', got {config.batching.strategy!r}"
        )

    if config.batching.batch_size < 1:
        errors.append(f"batching.batch_size must be >= 1, got {config.batching.batch_size}")

    if config.batching.snippet_budget < 1:
        errors.append(f"batching.snippet_budget must be >= 1, got {config.batching.snippet_budget}")

    if config.batching.max_request_chars < 1:
        errors.append(
            f"batching.max_request_chars must be >= 1, got {config.batching.max_request_chars}"
        )

    if config.policy.action not in ("block_commit", "warning", "log"):
        errors.append(
            f"policy.action must be 'block_commit', 'warning' or 'log', got {config.policy.action!r}"
        )

    if config.dedup.same_severity_pick not in ("latest", "first"):
        errors.append(
            f"dedup.same_severity_pick must be 'latest' or 'first', "
            f"got {config.dedup.same_severity_pick!r}"
        )

    return errors
