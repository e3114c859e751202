"""Duplicate grouping by normalized URL and content hash.

Pure functions; the maintenance stage does the I/O.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from bookmark_pipeline.services.url_utils import normalize_url


@dataclass(frozen=True)
class DuplicateCandidate:
    bookmark_id: str
    owner_id: str
    url: str
    content_hash: Optional[str] = None


@dataclass
class DuplicateReport:
    url_groups: list[list[str]] = field(default_factory=list)
    content_groups: list[list[str]] = field(default_factory=list)
    flagged: set[str] = field(default_factory=set)


def _groups(keyed: Iterable[tuple[tuple[str, str], str]]) -> list[list[str]]:
    buckets: dict[tuple[str, str], list[str]] = defaultdict(list)
    for key, bookmark_id in keyed:
        buckets[key].append(bookmark_id)
    return [ids for ids in buckets.values() if len(ids) >= 2]


def find_duplicates(candidates: Iterable[DuplicateCandidate]) -> DuplicateReport:
    """Flag every member of any same-owner group of size >= 2.

    Groups are formed by normalized URL and, independently, by content hash.
    Flagging is symmetric: no member of a group is exempt.
    """
    candidates = list(candidates)
    report = DuplicateReport(
        url_groups=_groups(
            ((c.owner_id, normalize_url(c.url)), c.bookmark_id) for c in candidates
        ),
        content_groups=_groups(
            ((c.owner_id, c.content_hash), c.bookmark_id)
            for c in candidates
            if c.content_hash
        ),
    )
    for group in report.url_groups + report.content_groups:
        report.flagged.update(group)
    return report
