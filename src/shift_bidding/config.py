"""
Configuration for the Shift Bidding core

Settings live in a JSON file. Missing keys are filled in from the defaults
so older settings files keep loading after new options are introduced.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from .data_manager import ValidationError


logger = logging.getLogger(__name__)

DEFAULT_CYCLE_LENGTH = 56
DEFAULT_DATABASE_URL = "sqlite:///data/shift_bidding.db"

HOLIDAY_FILTER_NAMES = ("COMMON_ONLY", "NO_OBSCURE", "WORKPLACE_STANDARD", "ESSENTIAL_ONLY")


@dataclass
class CategoryBoundary:
    """Half-open start-time range [start, end) mapped to a shift category"""
    name: str
    start: str  # "HH:MM"
    end: str  # "HH:MM", may be earlier than start to wrap past midnight

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "start": self.start, "end": self.end}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CategoryBoundary':
        try:
            return cls(name=data["name"], start=data["start"], end=data["end"])
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed category boundary {data!r}: {e}")


@dataclass
class Settings:
    """Application settings"""
    database_url: str = DEFAULT_DATABASE_URL
    cycle_length: int = DEFAULT_CYCLE_LENGTH
    can_claim_lines: bool = True
    rank_retry_attempts: int = 3
    rank_retry_delay: float = 0.05  # seconds
    holiday_filter: Optional[str] = "WORKPLACE_STANDARD"
    category_boundaries: List[CategoryBoundary] = field(default_factory=list)
    metric_weights: Dict[str, float] = field(default_factory=lambda: {
        "group_weight": 1.0,
        "days_weight": 3.0,
        "shift_weight": 2.0,
        "blocks5day_weight": 1.0,
        "blocks4day_weight": 1.0,
        "weekend_weight": 2.0,
        "saturday_weight": 1.0,
        "sunday_weight": 1.0,
    })
    activity_feed_limit: int = 50
    activity_feed_hours: int = 24

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category_boundaries"] = [b.to_dict() for b in self.category_boundaries]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Settings':
        defaults = cls().to_dict()

        # Merge with defaults to ensure all keys exist
        merged = dict(defaults)
        for key, value in data.items():
            if key not in defaults:
                logger.warning(f"Ignoring unknown setting '{key}'")
                continue
            merged[key] = value

        weights = dict(defaults["metric_weights"])
        weights.update(merged.get("metric_weights") or {})
        merged["metric_weights"] = weights

        merged["category_boundaries"] = [
            CategoryBoundary.from_dict(item) for item in merged.get("category_boundaries") or []
        ]

        settings = cls(**merged)
        settings.validate()
        return settings

    def validate(self):
        """Reject settings the core cannot work with"""
        if not isinstance(self.cycle_length, int) or self.cycle_length < 1:
            raise ValidationError(f"cycle_length must be a positive integer, got {self.cycle_length!r}")
        if self.rank_retry_attempts < 1:
            raise ValidationError("rank_retry_attempts must be at least 1")
        if self.rank_retry_delay < 0:
            raise ValidationError("rank_retry_delay cannot be negative")
        if self.holiday_filter is not None and self.holiday_filter not in HOLIDAY_FILTER_NAMES:
            raise ValidationError(
                f"Unknown holiday filter '{self.holiday_filter}', expected one of {', '.join(HOLIDAY_FILTER_NAMES)}"
            )
        if self.activity_feed_limit < 1 or self.activity_feed_hours < 1:
            raise ValidationError("Activity feed limit and window must be positive")


def load_settings(settings_file: Optional[str] = None) -> Settings:
    """Load settings from a JSON file, falling back to defaults when it is missing"""
    if settings_file is None:
        return Settings()

    path = Path(settings_file)
    if not path.exists():
        logger.info(f"No settings file at {path}, using defaults")
        return Settings()

    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        raise ValidationError(f"Settings file {path} could not be read: {e}")

    if not isinstance(data, dict):
        raise ValidationError(f"Settings file {path} must contain a JSON object")

    return Settings.from_dict(data)


def save_settings(settings: Settings, settings_file: str):
    """Write settings atomically via a temporary file"""
    path = Path(settings_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = path.with_suffix('.tmp')
    with open(temp_file, 'w', encoding='utf-8') as f:
        json.dump(settings.to_dict(), f, indent=2, ensure_ascii=False)
    temp_file.replace(path)
