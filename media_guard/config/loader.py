"""
Configuration management and loading.

Handles daily limits, storage locations and tracking settings from YAML
files and environment variables.
"""

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

import yaml

ENV_PREFIX = "MEDIA_GUARD_"

DEFAULT_CACHE_DIR = ".cache/media-guard"
DEFAULT_USAGE_DIR = ".cache/usage"
DEFAULT_PENDING_TTL = 24 * 60 * 60
DEFAULT_UPLOAD_TTL = 7 * 24 * 60 * 60

_TTL_PATTERN = re.compile(r"^(\d+)(s|m|h|d)$")
_TTL_UNITS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}

# limit field -> (environment suffix, parser)
LIMIT_ENV = {
    "images": ("DAILY_LIMIT_IMAGES", int),
    "videos": ("DAILY_LIMIT_VIDEOS", int),
    "speech_minutes": ("DAILY_LIMIT_SPEECH_MINUTES", float),
    "music_minutes": ("DAILY_LIMIT_MUSIC_MINUTES", float),
    "total_cost": ("DAILY_LIMIT_COST", float),
    "reset_hour_utc": ("DAILY_RESET_HOUR_UTC", int),
}


@dataclass(frozen=True)
class DailyLimits:
    """Optional per-resource daily ceilings."""
    images: Optional[int] = None
    videos: Optional[int] = None
    speech_minutes: Optional[float] = None
    music_minutes: Optional[float] = None
    total_cost: Optional[float] = None
    reset_hour_utc: int = 0

    def __post_init__(self):
        """Validate limit values are non-negative and the reset hour is a valid hour."""
        for name in ("images", "videos", "speech_minutes", "music_minutes", "total_cost"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} limit must be >= 0")
        if not 0 <= self.reset_hour_utc <= 23:
            raise ValueError("reset_hour_utc must be between 0 and 23")

    def has_limits(self) -> bool:
        """Whether any ceiling is configured."""
        return any(
            getattr(self, name) is not None
            for name in ("images", "videos", "speech_minutes", "music_minutes", "total_cost")
        )


@dataclass(frozen=True)
class Settings:
    """Complete runtime configuration."""
    cache_dir: str = DEFAULT_CACHE_DIR
    usage_dir: str = DEFAULT_USAGE_DIR
    tracking_enabled: bool = True
    limits: DailyLimits = field(default_factory=DailyLimits)
    pending_ttl: float = DEFAULT_PENDING_TTL
    upload_ttl: float = DEFAULT_UPLOAD_TTL
    fal_key: Optional[str] = None

    def __post_init__(self):
        if self.pending_ttl <= 0:
            raise ValueError("pending_ttl must be > 0")
        if self.upload_ttl <= 0:
            raise ValueError("upload_ttl must be > 0")


def parse_ttl(value: Union[int, float, str, None]) -> Optional[float]:
    """Parse a TTL given as seconds or as a string like ``"30s"``, ``"24h"``, ``"7d"``.

    Returns:
        TTL in seconds, or None for an absent value

    Raises:
        ValueError: If the string form is not recognized
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid TTL: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    match = _TTL_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid TTL: {value!r} (expected e.g. '30s', '15m', '24h', '7d')")
    return float(int(match.group(1)) * _TTL_UNITS[match.group(2)])


def parse_env_bool(value: Optional[str]) -> Optional[bool]:
    """Parse a boolean flag; None when absent or unrecognized."""
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in ("false", "0", "no", "off"):
        return False
    if normalized in ("true", "1", "yes", "on"):
        return True
    return None


def load_limits_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, float]:
    """Read limit overrides from the environment.

    Unparseable values are ignored rather than treated as zero, since a zero
    limit blocks all generation.

    Returns:
        Mapping of DailyLimits field names to parsed values
    """
    env = os.environ if environ is None else environ
    overrides = {}
    for name, (suffix, parser) in LIMIT_ENV.items():
        raw = env.get(ENV_PREFIX + suffix)
        if raw is None:
            continue
        try:
            overrides[name] = parser(raw.strip())
        except ValueError:
            continue
    return overrides


def is_tracking_enabled(environ: Optional[Mapping[str, str]] = None) -> Optional[bool]:
    """Tracking flag from the environment, None when unset or unrecognized."""
    env = os.environ if environ is None else environ
    return parse_env_bool(env.get(ENV_PREFIX + "TRACK_USAGE"))


def load_settings_file(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'limits', 'tracking_enabled', 'cache_dir', 'usage_dir',
                        'pending_ttl', 'upload_ttl'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    limits_data = raw_config.get('limits', {}) or {}
    limits = _parse_limits(limits_data)

    tracking = raw_config.get('tracking_enabled', True)
    if not isinstance(tracking, bool):
        raise ValueError("'tracking_enabled' must be true or false")

    kwargs = {'limits': limits, 'tracking_enabled': tracking}
    for key in ('cache_dir', 'usage_dir'):
        if key in raw_config:
            if not isinstance(raw_config[key], str) or not raw_config[key]:
                raise ValueError(f"'{key}' must be a non-empty string")
            kwargs[key] = raw_config[key]
    for key in ('pending_ttl', 'upload_ttl'):
        if key in raw_config:
            kwargs[key] = parse_ttl(raw_config[key])

    return Settings(**kwargs)


def _parse_limits(data: Dict) -> DailyLimits:
    """Parse and validate the limits section.

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'limits' must be a dictionary")

    allowed_keys = set(LIMIT_ENV)
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in limits: {unknown_keys}")

    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in limits must be a number")
        if key in ('images', 'videos', 'reset_hour_utc') and not float(value).is_integer():
            raise ValueError(f"'{key}' in limits must be a whole number")

    values = {key: value for key, value in data.items() if value is not None}
    for key in ('images', 'videos', 'reset_hour_utc'):
        if key in values:
            values[key] = int(values[key])
    return DailyLimits(**values)


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Build settings from an optional YAML file, then apply environment overrides."""
    env = os.environ if environ is None else environ
    settings = load_settings_file(path) if path else Settings()

    limit_overrides = load_limits_from_env(env)
    if limit_overrides:
        settings = replace(settings, limits=replace(settings.limits, **limit_overrides))

    tracking = is_tracking_enabled(env)
    if tracking is not None:
        settings = replace(settings, tracking_enabled=tracking)

    if env.get(ENV_PREFIX + "CACHE_DIR"):
        settings = replace(settings, cache_dir=env[ENV_PREFIX + "CACHE_DIR"])
    if env.get(ENV_PREFIX + "USAGE_DIR"):
        settings = replace(settings, usage_dir=env[ENV_PREFIX + "USAGE_DIR"])

    fal_key = env.get("FAL_KEY") or env.get("FAL_API_KEY")
    if fal_key:
        settings = replace(settings, fal_key=fal_key)

    return settings
