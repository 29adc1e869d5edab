"""
Central configuration for the projection reconciliation engine.

All paths, windows, and thresholds are defined here.
Override via environment variables or by passing a Config instance directly.

Settings priority (highest wins):
  1. Environment variables
  2. config/engine_settings.json  (admin-editable, persisted)
  3. Hardcoded defaults in this file
"""
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# Project root (directory containing this file)
PROJECT_ROOT = Path(__file__).parent

# Default data locations (relative to project root)
DEFAULT_VENDORS_CSV = PROJECT_ROOT / "data" / "vendors.csv"
DEFAULT_OUTPUT_DIR  = PROJECT_ROOT / "output"
DEFAULT_INBOX_DIR   = PROJECT_ROOT / "inbox"
DEFAULT_DB_PATH     = DEFAULT_OUTPUT_DIR / "projections.db"

# Ordered: the first name found in a program description wins, so
# "laura/tiff" must precede "laura" and "tiff".
DEFAULT_KNOWN_COLLECTIONS = [
    "ambroise", "forte", "hoxton", "pm symmetric", "vera", "aviator",
    "lowe", "emile", "laura/tiff", "laura", "tiff", "blume", "soma", "edendale",
]


# Settings that also have an environment variable; a set variable wins over
# engine_settings.json.
_ENV_OVERRIDES = {
    "poll_interval_seconds": "POLL_INTERVAL",
    "known_collections":     "KNOWN_COLLECTIONS",
}


def _collections_from_env() -> list[str]:
    raw = os.getenv("KNOWN_COLLECTIONS")
    if not raw:
        return list(DEFAULT_KNOWN_COLLECTIONS)
    return _parse_collections(raw)


def _parse_collections(value) -> list[str]:
    """Accept a list or a comma-separated string; normalise to lowercase."""
    items = value.split(",") if isinstance(value, str) else list(value)
    return [str(c).strip().lower() for c in items if str(c).strip()]


@dataclass
class Config:
    # --- Data source paths ---
    vendors_csv: Path = field(
        default_factory=lambda: Path(os.getenv("VENDORS_CSV", str(DEFAULT_VENDORS_CSV)))
    )

    # --- Output settings ---
    output_dir: Path = field(
        default_factory=lambda: Path(os.getenv("OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR)))
    )
    db_path:    Path = field(
        default_factory=lambda: Path(os.getenv("DB_PATH", str(DEFAULT_DB_PATH)))
    )

    # --- Watch / polling mode ---
    inbox_dir: Path = field(
        default_factory=lambda: Path(os.getenv("PO_INBOX_DIR", str(DEFAULT_INBOX_DIR)))
    )
    poll_interval_seconds: int = field(
        default_factory=lambda: int(os.getenv("POLL_INTERVAL", "300"))
    )
    # Each poll imports new PO CSVs from inbox_dir and then runs the expiry sweep.

    # --- Collection extraction ---
    known_collections: list[str] = field(default_factory=_collections_from_env)

    # --- Expiration windows (days before the end of the target month) ---
    regular_window_days: int = 90
    mto_window_days:     int = 30

    # --- Matching / reporting thresholds ---
    variance_flag_pct:      int = 10    # |variance_pct| above this is flagged
    overdue_threshold_days: int = 90    # "at risk" horizon for unmatched regular rows
    match_batch_size:       int = 500   # POs per matching batch

    # --- Vendor resolution ---
    vendor_suggest_threshold: int = 75  # Minimum rapidfuzz score (0-100) for suggestions

    def __post_init__(self) -> None:
        """Overlay runtime-tunable settings from engine_settings.json if present."""
        config_dir = Path(os.getenv("CONFIG_DIR", str(PROJECT_ROOT / "config")))
        settings_file = config_dir / "engine_settings.json"
        if not settings_file.exists():
            return
        _type_map: dict[str, type] = {
            "regular_window_days":      int,
            "mto_window_days":          int,
            "variance_flag_pct":        int,
            "overdue_threshold_days":   int,
            "match_batch_size":         int,
            "vendor_suggest_threshold": int,
            "poll_interval_seconds":    int,
            "known_collections":        _parse_collections,
        }
        try:
            with open(settings_file, encoding="utf-8") as f:
                overrides = {k: v for k, v in json.load(f).items() if not k.startswith("_")}
            for key, val in overrides.items():
                if key in _ENV_OVERRIDES and os.getenv(_ENV_OVERRIDES[key]):
                    continue
                if key in _type_map and hasattr(self, key):
                    setattr(self, key, _type_map[key](val))
        except Exception as exc:
            logger.warning("Failed to load engine_settings.json: %s", exc)

    def ensure_output_dir(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
