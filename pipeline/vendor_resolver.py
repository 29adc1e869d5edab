"""
Vendor resolution module.

Maps a raw, free-text vendor name from a PO import to a canonical vendor id
using two strategies in priority order:
  1. Canonical name exact match (case-insensitive, whitespace-trimmed)
  2. Alias exact match (case-insensitive, whitespace-trimmed)

Unresolved names are not an error.  For operator review, suggest() ranks
likely canonical vendors with rapidfuzz, but never resolves automatically.
"""
import csv
import logging
from pathlib import Path
from typing import Iterable, Optional

from rapidfuzz import fuzz

from models.result import VendorSuggestion
from models.vendor import Vendor

logger = logging.getLogger(__name__)

# Minimum fuzzy score (0-100) for a suggestion
SUGGEST_THRESHOLD = 75


def _normalise_name(name: Optional[str]) -> Optional[str]:
    """Lowercase and trim a vendor name."""
    if not name:
        return None
    cleaned = name.strip().lower()
    return cleaned or None


def load_vendors_csv(path: str | Path) -> list[Vendor]:
    """
    Load the vendor registry from CSV.

    CSV format (vendors.csv):
      id, name, vendor_code, aliases
      aliases: pipe-separated raw import names, e.g. "Riches|Riches Intl Ltd"
    """
    path = Path(path)
    vendors: list[Vendor] = []
    if not path.exists():
        logger.warning("Vendors CSV not found: %s (vendor resolution disabled)", path)
        return vendors
    with open(path, newline="", encoding="utf-8") as f:
        for line_no, row in enumerate(csv.DictReader(f), start=2):
            try:
                aliases_raw = row.get("aliases") or ""
                vendors.append(Vendor(
                    id=int(row["id"]),
                    name=row["name"].strip(),
                    vendor_code=(row.get("vendor_code") or "").strip() or None,
                    aliases=[a.strip() for a in aliases_raw.split("|") if a.strip()],
                ))
            except (KeyError, ValueError, AttributeError) as exc:
                logger.warning("Skipping vendors.csv line %d: %s", line_no, exc)
    logger.info("Loaded %d vendors from %s", len(vendors), path.name)
    return vendors


class VendorResolver:
    """Resolves raw vendor names against canonical names, then aliases."""

    def __init__(self, vendors: Iterable[Vendor], suggest_threshold: int = SUGGEST_THRESHOLD):
        self.vendors: list[Vendor] = list(vendors)
        self.suggest_threshold = suggest_threshold
        self._by_name: dict[str, int] = {}
        self._by_alias: dict[str, int] = {}
        for v in self.vendors:
            key = _normalise_name(v.name)
            if key:
                self._by_name.setdefault(key, v.id)
            for alias in v.aliases:
                akey = _normalise_name(alias)
                if akey:
                    self._by_alias.setdefault(akey, v.id)

    @classmethod
    def from_csv(cls, path: str | Path, suggest_threshold: int = SUGGEST_THRESHOLD) -> "VendorResolver":
        return cls(load_vendors_csv(path), suggest_threshold=suggest_threshold)

    @classmethod
    def from_repository(cls, repository, suggest_threshold: int = SUGGEST_THRESHOLD) -> "VendorResolver":
        vendors = repository.list_vendors()
        logger.info("Loaded %d vendors from registry", len(vendors))
        return cls(vendors, suggest_threshold=suggest_threshold)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(self, raw_name: Optional[str]) -> Optional[int]:
        """Return the canonical vendor id for *raw_name*, or None if unresolved."""
        key = _normalise_name(raw_name)
        if not key:
            return None

        vendor_id = self._by_name.get(key)
        if vendor_id is not None:
            return vendor_id

        vendor_id = self._by_alias.get(key)
        if vendor_id is not None:
            logger.debug("Vendor resolved by alias: %r -> %d", raw_name, vendor_id)
            return vendor_id

        logger.debug("Vendor unresolved: %r", raw_name)
        return None

    def suggest(self, raw_name: Optional[str], limit: int = 3) -> list[VendorSuggestion]:
        """
        Rank canonical vendors whose name or alias fuzzily resembles *raw_name*.

        Each vendor appears at most once, with its best score across all of
        its names.
        """
        key = _normalise_name(raw_name)
        if not key:
            return []

        best: dict[int, tuple[float, Vendor]] = {}
        for v in self.vendors:
            for candidate in v.all_names:
                score = fuzz.token_sort_ratio(key, candidate.lower())
                if score >= self.suggest_threshold and score > best.get(v.id, (0.0, v))[0]:
                    best[v.id] = (score, v)

        ranked = sorted(best.values(), key=lambda sv: (-sv[0], sv[1].name))
        return [
            VendorSuggestion(vendor_id=v.id, vendor_name=v.name, score=round(score, 1))
            for score, v in ranked[:limit]
        ]
