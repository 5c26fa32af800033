"""Row validation and identity normalization for connection exports."""
import hashlib
import logging
import re
from enum import Enum
from typing import Mapping, NamedTuple, Optional

from csv_worker.schemas.connection import NormalizedRecord
from csv_worker.services.csv_parser import REQUIRED_COLUMNS, RawRecord

logger = logging.getLogger(__name__)

PROFILE_URL_RE = re.compile(r"linkedin\.com/in/", re.IGNORECASE)
TRAILING_SLASH_RE = re.compile(r"/$")

# Entries kept per job before the hash cache stops growing
HASH_CACHE_LIMIT = 200_000


class RowStatus(str, Enum):
    VALID = "valid"
    EMPTY = "empty"
    INVALID = "invalid"


class RowVerdict(NamedTuple):
    status: RowStatus
    reason: Optional[str] = None


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _optional(value: Optional[str]) -> Optional[str]:
    return _clean(value) or None


def canonicalize_url(url: str) -> str:
    """Lower-case, trimmed, with one trailing slash removed."""
    return TRAILING_SLASH_RE.sub("", (url or "").strip().lower())


def hash_identity(canonical: str) -> str:
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdentityHasher:
    """
    SHA-256 of canonical profile URLs with a per-job memo.

    One instance belongs to one job and is dropped with it.
    """

    def __init__(self, max_entries: int = HASH_CACHE_LIMIT):
        self.max_entries = max_entries
        self._cache: dict[str, str] = {}
        self.hits = 0
        self.misses = 0

    def __call__(self, url: str) -> tuple[str, str]:
        """
        Args:
            url: Raw profile URL

        Returns:
            Tuple of (canonical url, hex digest)
        """
        canonical = canonicalize_url(url)
        cached = self._cache.get(canonical)
        if cached is not None:
            self.hits += 1
            return canonical, cached

        self.misses += 1
        digest = hash_identity(canonical)
        if len(self._cache) < self.max_entries:
            self._cache[canonical] = digest
        return canonical, digest


def validate_record(values: Mapping[str, str]) -> RowVerdict:
    """
    Decide whether a raw row can be stored.

    Rows with no content at all are EMPTY and are not counted as invalid.
    """
    if not any(_clean(value) for value in values.values()):
        return RowVerdict(RowStatus.EMPTY)

    missing = [column for column in REQUIRED_COLUMNS if not _clean(values.get(column))]
    if missing:
        return RowVerdict(RowStatus.INVALID, f"missing {', '.join(missing)}")

    if not PROFILE_URL_RE.search(values["url"]):
        return RowVerdict(RowStatus.INVALID, "url is not a profile URL")

    return RowVerdict(RowStatus.VALID)


def normalize_record(
    values: Mapping[str, str], owner: str, hasher: IdentityHasher
) -> NormalizedRecord:
    """
    Map a validated row onto the persistence schema.

    Args:
        values: Row keyed by canonical column name
        owner: Owning user ID
        hasher: Job-scoped identity hasher

    Returns:
        NormalizedRecord with its identity hash
    """
    full_name = " ".join(
        part for part in (_clean(values.get("first name")), _clean(values.get("last name"))) if part
    )
    profile_url, url_hash = hasher(values["url"])

    return NormalizedRecord(
        name=full_name,
        profile_url=profile_url,
        owner=owner.strip(),
        email=_optional(values.get("email address")),
        company=_optional(values.get("company")),
        title=_optional(values.get("position")),
        connected_on=_optional(values.get("connected on")),
        url_hash=url_hash,
    )


class RecordValidator:
    """Filters raw records for one job and keeps the row counters."""

    def __init__(self, owner: str, hasher: Optional[IdentityHasher] = None):
        self.owner = owner
        self.hasher = hasher or IdentityHasher()
        self.valid = 0
        self.invalid = 0
        self.empty = 0

    def check(self, record: RawRecord) -> Optional[NormalizedRecord]:
        """Return the normalized row, or None if the row is skipped."""
        verdict = validate_record(record.values)
        if verdict.status is RowStatus.EMPTY:
            self.empty += 1
            return None
        if verdict.status is RowStatus.INVALID:
            self.invalid += 1
            logger.debug(f"Skipping invalid row at line {record.line_number}: {verdict.reason}")
            return None

        self.valid += 1
        return normalize_record(record.values, self.owner, self.hasher)

    def summary(self) -> str:
        total = self.valid + self.invalid
        percentage = round(self.valid * 100 / total) if total else 0
        return (
            f"Validation complete: {self.valid}/{total} rows valid ({percentage}%), "
            f"{self.invalid} invalid rows, {self.empty} empty rows"
        )
