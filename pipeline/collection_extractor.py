"""
Make-to-order collection extraction.

Pulls an MTO collection tag out of a PO's free-text program description,
e.g. "MTO HOXTON FEB 2026" -> "hoxton".  This is a best-effort classifier:
it is deterministic and testable against its rules, not a text parser.

Rules, in order:
  1. No case-insensitive "mto" in the text -> None (not an MTO candidate).
  2. First configured known collection occurring as a substring wins.
  3. Fallback: the letters/spaces/slashes following the "mto" token,
     cut at a month name or 20xx year found after the first character,
     trailing commas and whitespace trimmed.
     Empty remainder -> None.

Anything with an ``extract(text) -> Optional[str]`` method can stand in for
CollectionExtractor inside MatchingEngine.
"""
import logging
import re
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

_MONTH_RE = re.compile(
    r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec|january|february|march|"
    r"april|june|july|august|september|october|november|december)\b"
)
_YEAR_RE = re.compile(r"\b(20\d{2})\b")
_AFTER_MTO_RE = re.compile(r"mto[\s:_-]+([a-z\s/]+)")
_TRAILING_JUNK = re.compile(r"[\s,]+$")


class CollectionExtractor:
    """Classifies a program description into an MTO collection name."""

    def __init__(self, known_collections: Iterable[str]):
        # Order matters: earlier names win when several occur in one text.
        self.known_collections: list[str] = [
            c.strip().lower() for c in known_collections if c and c.strip()
        ]

    def extract(self, program_description: Optional[str]) -> Optional[str]:
        """Return the lowercase collection name, or None if none can be found."""
        if not program_description:
            return None
        text = program_description.lower()

        if "mto" not in text:
            return None

        for collection in self.known_collections:
            if collection in text:
                return collection

        return self._fallback(text)

    @staticmethod
    def _fallback(text: str) -> Optional[str]:
        m = _AFTER_MTO_RE.search(text)
        if not m:
            return None
        extracted = m.group(1).strip()

        # A date token leading the remainder is kept: "mto may flowers".
        month = _MONTH_RE.search(extracted)
        if month and month.start() > 0:
            extracted = extracted[:month.start()].strip()

        year = _YEAR_RE.search(extracted)
        if year and year.start() > 0:
            extracted = extracted[:year.start()].strip()

        extracted = _TRAILING_JUNK.sub("", extracted).strip()
        if not extracted:
            logger.debug("MTO text without a usable collection: %r", text)
            return None
        return extracted
