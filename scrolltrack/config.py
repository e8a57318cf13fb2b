"""Thresholds and paths for scrolltrack.

All timing values are milliseconds. Defaults can be overridden from a YAML
file, for example::

    session_merge_gap_ms: 45000
    minimum_glance_duration_ms: 3000
    hidden_packages:
      - com.android.systemui
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

logger = logging.getLogger(__name__)

DATA_DIR = Path.home() / ".local" / "share" / "scrolltrack"
DEFAULT_DB_PATH = DATA_DIR / "scrolltrack.db"
DEFAULT_DRAFT_PATH = DATA_DIR / "session_draft.json"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "scrolltrack" / "config.yaml"


class ConfigError(Exception):
    """Raised when a config file cannot be read or fails validation."""

    pass


class Thresholds(BaseModel):
    """Timing thresholds shared by the live path and the batch calculators."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Live capture
    draft_save_delay_ms: int = 10_000
    flush_interval_ms: int = 120_000
    session_merge_gap_ms: int = 30_000

    # Unlock sessions
    minimum_glance_duration_ms: int = 2_000
    compulsive_check_threshold_ms: int = 2_000
    unlock_event_follow_window_ms: int = 2_000
    notification_unlock_window_ms: int = 30_000

    # App usage
    minimum_session_duration_ms: int = 1_000
    app_open_debounce_ms: int = 15_000
    quick_switch_threshold_ms: int = 2_000
    foreground_lookback_ms: int = 4 * 3_600_000

    # Active time windows per interaction kind
    active_time_scroll_window_ms: int = 3_000
    active_time_tap_window_ms: int = 2_000
    active_time_type_window_ms: int = 8_000
    active_time_interaction_window_ms: int = 5_000

    # Insights
    night_owl_window_ms: int = 4 * 3_600_000

    hidden_packages: frozenset[str] = frozenset()


DEFAULT_THRESHOLDS = Thresholds()


def load_thresholds(path: Path | None = None) -> Thresholds:
    """Load thresholds from a YAML file, falling back to defaults.

    Args:
        path: Config file. When None, DEFAULT_CONFIG_PATH is used if it exists.

    Returns:
        Thresholds with file values layered over the defaults.

    Raises:
        ConfigError: If an explicitly given file is missing, or any file is
            not valid YAML or contains unknown or mistyped keys.
    """
    if path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return DEFAULT_THRESHOLDS
        path = DEFAULT_CONFIG_PATH
    elif not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    try:
        thresholds = Thresholds.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e

    logger.debug(f"Loaded thresholds from {path}")
    return thresholds
