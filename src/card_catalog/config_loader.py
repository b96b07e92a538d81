import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .confidence import FIELD_WEIGHTS, HIGH_THRESHOLD, MEDIUM_THRESHOLD, UNCERTAINTY_THRESHOLD, check_confidence, validate_weights
from .models import AppConfig, StageSettings


DEFAULT_STAGE_TIMEOUT_S = 10.0


class ConfigError(ValueError):
    pass


def _section(raw: Dict[str, Any], key: str, where: str = "") -> Dict[str, Any]:
    section = raw.get(key)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"{where}{key} must be a mapping, got {type(section).__name__}")
    return section


def _coerce_float(raw: Dict[str, Any], key: str, default: float, where: str) -> float:
    value = raw.get(key)
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"{where}{key} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{where}{key} must be a number, got {value!r}") from e


def _coerce_stage(raw_stage: Dict[str, Any], where: str, key_env: str, timeout_s: float) -> StageSettings:
    stage_timeout_s = _coerce_float(raw_stage, "timeout_s", timeout_s, where)
    if stage_timeout_s <= 0:
        raise ConfigError(f"{where}timeout_s must be positive, got {stage_timeout_s}")
    return StageSettings(
        endpoint=raw_stage.get("endpoint"),
        api_key=raw_stage.get("api_key") or os.getenv(key_env),
        timeout_s=stage_timeout_s,
    )


def _coerce_threshold(raw: Dict[str, Any], key: str, default: float) -> float:
    value = _coerce_float(raw, key, default, "recognition.")
    try:
        return check_confidence(value)
    except ValueError as e:
        raise ConfigError(f"recognition.{key}: {e}") from e


def config_from_dict(raw: Optional[Dict[str, Any]]) -> AppConfig:
    raw = raw or {}
    app = _section(raw, "app")
    recognition = _section(raw, "recognition")
    catalog = _section(raw, "catalog")
    images = _section(raw, "images")

    primary_threshold = _coerce_threshold(recognition, "primary_threshold", HIGH_THRESHOLD)
    fallback_threshold = _coerce_threshold(recognition, "fallback_threshold", MEDIUM_THRESHOLD)
    if primary_threshold < fallback_threshold:
        raise ConfigError(
            f"recognition.primary_threshold ({primary_threshold}) must not be below fallback_threshold ({fallback_threshold})"
        )

    stage_timeout_s = _coerce_float(recognition, "stage_timeout_s", DEFAULT_STAGE_TIMEOUT_S, "recognition.")
    if stage_timeout_s <= 0:
        raise ConfigError(f"recognition.stage_timeout_s must be positive, got {stage_timeout_s}")

    raw_weights = _section(recognition, "field_weights", "recognition.") or FIELD_WEIGHTS
    weights = {name: _coerce_float(raw_weights, name, 0.0, "recognition.field_weights.") for name in raw_weights}
    try:
        validate_weights(weights)
    except ValueError as e:
        raise ConfigError(f"recognition.field_weights: {e}") from e

    seed = app.get("mock_seed")
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
        raise ConfigError(f"app.mock_seed must be an integer, got {seed!r}")
    catalog_timeout_s = _coerce_float(catalog, "timeout_s", 10, "catalog.")
    return AppConfig(
        mock_mode=bool(app.get("mock_mode", False)),
        log_dir=app.get("log_dir", "logs"),
        audit_dir=app.get("audit_dir", "logs/recognitions"),
        primary_threshold=primary_threshold,
        fallback_threshold=fallback_threshold,
        uncertainty_threshold=_coerce_threshold(recognition, "uncertainty_threshold", UNCERTAINTY_THRESHOLD),
        stage_timeout_s=stage_timeout_s,
        field_weights=weights,
        primary=_coerce_stage(_section(recognition, "primary", "recognition."), "recognition.primary.", "XIMILAR_API_KEY", stage_timeout_s),
        fallback=_coerce_stage(_section(recognition, "fallback", "recognition."), "recognition.fallback.", "GOOGLE_VISION_API_KEY", stage_timeout_s),
        catalog_base_url=catalog.get("base_url"),
        catalog_timeout_s=catalog_timeout_s,
        images_base_url=images.get("base_url"),
        images_local_dir=images.get("local_dir", "captures"),
        mock_seed=seed,
        default_team=app.get("default_team", "Milwaukee Brewers"),
    )


def load_config(path: Path) -> AppConfig:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if raw is not None and not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {path}")
    return config_from_dict(raw)
