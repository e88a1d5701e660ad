"""Layered TOML configuration with typed dataclass mapping.

Priority stack (highest wins):
    1. Hardcoded defaults (HumanPassConfig())
    2. config/default.toml (bundled)
    3. config/profiles/{profile}.toml (profile delta)
    4. ~/.config/humanpass/config.toml (user config)
    5. CLI overrides (dot-notation)
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Typed config tree; frozen and slotted
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GeneralConfig:
    """Top-level general settings."""

    profile: str = "local"
    log_level: str = "info"
    data_dir: str = "./humanpass_data"


@dataclass(frozen=True, slots=True)
class RewriteConfig:
    """Rewrite engine (chat-completions endpoint) settings."""

    base_url: str = "https://api.openai.com"
    api_key_env: str = "HUMANPASS_REWRITE_API_KEY"
    model: str = "gpt-4.1-mini"
    temperature: float = 0.7
    max_tokens: int = 2000
    timeout_seconds: float = 60.0
    max_retries: int = 2
    retry_backoff_seconds: float = 1.0


@dataclass(frozen=True, slots=True)
class DetectorEndpointConfig:
    """Connection settings for one external detector."""

    enabled: bool = True
    url: str = ""
    api_key_env: str = ""
    timeout_seconds: float = 20.0


@dataclass(frozen=True, slots=True)
class DetectionConfig:
    """Detector panel and verdict thresholds."""

    acceptance_threshold: float = 0.05
    partial_threshold: float = 0.20
    min_successful: int = 2
    gptzero: DetectorEndpointConfig = field(
        default_factory=lambda: DetectorEndpointConfig(
            url="https://api.gptzero.me/v2/predict/text",
            api_key_env="GPTZERO_API_KEY",
        )
    )
    open_detector: DetectorEndpointConfig = field(
        default_factory=lambda: DetectorEndpointConfig(
            url="https://api-inference.huggingface.co/models/openai-community/roberta-base-openai-detector",
            api_key_env="HF_API_TOKEN",
        )
    )
    gltr: DetectorEndpointConfig = field(
        default_factory=lambda: DetectorEndpointConfig(
            url="http://localhost:5001/api/analyze",
        )
    )


@dataclass(frozen=True, slots=True)
class ValidationConfig:
    """Attempt loop settings shared by all tiers."""

    attempt_cost: int = 1
    job_timeout_seconds: float = 300.0
    pause_between_attempts_seconds: float = 0.0
    # A PROCESSING job whose heartbeat is younger than this is owned by a live worker
    lease_seconds: float = 600.0


@dataclass(frozen=True, slots=True)
class TierConfig:
    """Per-subscription-tier limits."""

    max_attempts: int = 3
    monthly_credits: int = 10


@dataclass(frozen=True, slots=True)
class TiersConfig:
    """Subscription tiers known to the pipeline."""

    free: TierConfig = field(default_factory=lambda: TierConfig(2, 10))
    basic: TierConfig = field(default_factory=lambda: TierConfig(3, 100))
    pro: TierConfig = field(default_factory=lambda: TierConfig(4, 500))
    enterprise: TierConfig = field(default_factory=lambda: TierConfig(5, 2000))

    def get(self, name: str) -> TierConfig:
        """Return the tier named ``name``.

        Raises:
            KeyError: If no such tier exists.
        """
        if name not in TIER_NAMES:
            raise KeyError(f"Unknown tier {name!r}; expected one of {', '.join(TIER_NAMES)}")
        tier: TierConfig = getattr(self, name)
        return tier


TIER_NAMES: tuple[str, ...] = ("free", "basic", "pro", "enterprise")


@dataclass(frozen=True, slots=True)
class StoreConfig:
    """Job record / ledger storage settings."""

    backend: str = "json"
    write_retries: int = 3
    write_backoff_seconds: float = 0.5
    lock_timeout_seconds: float = 30.0


@dataclass(frozen=True, slots=True)
class HumanPassConfig:
    """Root configuration node."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    rewrite: RewriteConfig = field(default_factory=RewriteConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    tiers: TiersConfig = field(default_factory=TiersConfig)
    store: StoreConfig = field(default_factory=StoreConfig)


# ---------------------------------------------------------------------------
# Config loading helpers
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Lists replace, dicts recurse."""
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce_value(s: str) -> bool | int | float | str:
    """Coerce a CLI string value to its typed equivalent."""
    if s.lower() == "true":
        return True
    if s.lower() == "false":
        return False
    try:
        return int(s)
    except ValueError:
        pass
    try:
        return float(s)
    except ValueError:
        pass
    return s


def _apply_dot_override(raw: dict[str, Any], dot_key: str, str_value: str) -> None:
    """Apply a dot-notation CLI override into the raw config dict.

    Example: _apply_dot_override(raw, "tiers.pro.max_attempts", "6")
    sets raw["tiers"]["pro"]["max_attempts"] = 6
    """
    parts = dot_key.split(".")
    target = raw
    for part in parts[:-1]:
        if part not in target:
            target[part] = {}
        target = target[part]
    target[parts[-1]] = _coerce_value(str_value)


def _load_toml_file(path: Path) -> dict[str, Any]:
    """Load and parse a TOML file, returning empty dict if not found."""
    if not path.is_file():
        return {}
    with open(path, "rb") as f:
        return tomllib.load(f)


def _load_bundled_toml(filename: str) -> dict[str, Any]:
    """Load a TOML file bundled in the config/ directory relative to project root."""
    # Walk up from this file to find the project root containing config/
    current = Path(__file__).resolve().parent
    for _ in range(5):
        config_path = current / "config" / filename
        if config_path.is_file():
            with open(config_path, "rb") as f:
                return tomllib.load(f)
        current = current.parent

    # Installed wheels carry the config tree as package data
    try:
        config_res = resources.files("humanpass").joinpath(f"_config/{filename}")
        if config_res.is_file():
            return tomllib.loads(config_res.read_text(encoding="utf-8"))
    except (FileNotFoundError, TypeError):
        pass

    return {}


def _build_tiers(raw: dict[str, Any]) -> TiersConfig:
    defaults = TiersConfig()
    tiers = {}
    for name in TIER_NAMES:
        base = defaults.get(name)
        override = raw.get(name, {})
        tiers[name] = TierConfig(
            max_attempts=override.get("max_attempts", base.max_attempts),
            monthly_credits=override.get("monthly_credits", base.monthly_credits),
        )
    return TiersConfig(**tiers)


def _build_config(raw: dict[str, Any]) -> HumanPassConfig:
    """Map a merged raw dict to the typed HumanPassConfig tree."""
    general_raw = dict(raw.get("general", {}))
    rewrite_raw = dict(raw.get("rewrite", {}))
    detection_raw = dict(raw.get("detection", {}))
    validation_raw = dict(raw.get("validation", {}))
    tiers_raw = dict(raw.get("tiers", {}))
    store_raw = dict(raw.get("store", {}))

    # Endpoint sections merge over the per-detector defaults
    default_detection = DetectionConfig()
    endpoints: dict[str, DetectorEndpointConfig] = {}
    for name in ("gptzero", "open_detector", "gltr"):
        base: DetectorEndpointConfig = getattr(default_detection, name)
        override = detection_raw.pop(name, {})
        endpoints[name] = DetectorEndpointConfig(
            enabled=override.get("enabled", base.enabled),
            url=override.get("url", base.url),
            api_key_env=override.get("api_key_env", base.api_key_env),
            timeout_seconds=float(override.get("timeout_seconds", base.timeout_seconds)),
        )
    detection = DetectionConfig(**detection_raw, **endpoints)

    config = HumanPassConfig(
        general=GeneralConfig(**general_raw),
        rewrite=RewriteConfig(**rewrite_raw),
        detection=detection,
        validation=ValidationConfig(**validation_raw),
        tiers=_build_tiers(tiers_raw),
        store=StoreConfig(**store_raw),
    )
    _validate(config)
    return config


def _validate(config: HumanPassConfig) -> None:
    """Reject configurations the pipeline cannot honour."""
    det = config.detection
    if not 0.0 < det.acceptance_threshold <= 1.0:
        raise ValueError(
            f"detection.acceptance_threshold must be in (0, 1], got {det.acceptance_threshold}"
        )
    if det.partial_threshold < det.acceptance_threshold:
        raise ValueError(
            "detection.partial_threshold must be >= detection.acceptance_threshold"
        )
    if det.min_successful < 1:
        raise ValueError(f"detection.min_successful must be >= 1, got {det.min_successful}")
    if config.validation.lease_seconds <= 0:
        raise ValueError(
            f"validation.lease_seconds must be > 0, got {config.validation.lease_seconds}"
        )
    if config.validation.attempt_cost < 1:
        raise ValueError(
            f"validation.attempt_cost must be >= 1, got {config.validation.attempt_cost}"
        )
    for name in TIER_NAMES:
        if config.tiers.get(name).max_attempts < 1:
            raise ValueError(f"tiers.{name}.max_attempts must be >= 1")
    if config.store.backend not in ("json", "memory"):
        raise ValueError(f"store.backend must be 'json' or 'memory', got {config.store.backend!r}")


def load_config(
    profile: str | None = None,
    user_config_path: Path | None = None,
    cli_overrides: dict[str, str] | None = None,
) -> HumanPassConfig:
    """Load configuration with 5-layer priority stack.

    Args:
        profile: Deployment profile name ("local", "production").
            If None, uses the value from default.toml.
        user_config_path: Path to user config TOML. Defaults to
            ~/.config/humanpass/config.toml.
        cli_overrides: Dot-notation key→value pairs from CLI flags.

    Returns:
        Fully resolved, typed HumanPassConfig.

    Raises:
        ValueError: If the merged configuration is inconsistent.
    """
    # Layer 1: hardcoded defaults (implicit via dataclass defaults)
    # Layer 2: bundled default.toml
    raw = _load_bundled_toml("default.toml")

    effective_profile = profile
    if effective_profile is None:
        effective_profile = raw.get("general", {}).get("profile", "local")

    # Layer 3: profile overrides
    profile_raw = _load_bundled_toml(f"profiles/{effective_profile}.toml")
    raw = _deep_merge(raw, profile_raw)
    raw = _deep_merge(raw, {"general": {"profile": effective_profile}})

    # Layer 4: user config
    if user_config_path is None:
        user_config_path = Path.home() / ".config" / "humanpass" / "config.toml"
    user_raw = _load_toml_file(user_config_path)
    raw = _deep_merge(raw, user_raw)

    # Layer 5: CLI overrides
    if cli_overrides:
        for dot_key, str_value in cli_overrides.items():
            _apply_dot_override(raw, dot_key, str_value)

    return _build_config(raw)
