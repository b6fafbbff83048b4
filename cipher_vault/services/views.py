"""Secondary filters over owner listings.

The record store stays a plain index; trash, starred, recent and search views
are computed here from its listings.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from ..models import Classification, FileRecord

GIB = 1024 ** 3
BASE_QUOTA_BYTES = 2 * GIB
EARNED_QUOTA_BYTES = 4 * GIB

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def trash_view(records: Iterable[FileRecord]) -> List[FileRecord]:
    trashed = [record for record in records if record.is_trashed]
    return sorted(trashed, key=lambda record: record.trashed_at or _EPOCH, reverse=True)


def starred_view(records: Iterable[FileRecord]) -> List[FileRecord]:
    return [record for record in records if record.is_starred and not record.is_trashed]


def recent_view(records: Iterable[FileRecord], limit: int = 25) -> List[FileRecord]:
    """Most recently opened files first; never-opened files fall back to creation time."""
    files = [record for record in records if not record.is_folder and not record.is_trashed]
    files.sort(key=lambda record: record.accessed_at or record.created_at, reverse=True)
    return files[:max(limit, 0)]


def folders_view(records: Iterable[FileRecord]) -> List[FileRecord]:
    folders = [record for record in records if record.is_folder and not record.is_trashed]
    return sorted(folders, key=lambda record: record.display_name.lower())


def search(
    records: Iterable[FileRecord],
    query: str = "",
    *,
    classification: Optional[Classification] = None,
    content_type_prefix: Optional[str] = None,
) -> List[FileRecord]:
    needle = (query or "").strip().lower()
    matches = []
    for record in records:
        if record.is_trashed:
            continue
        if needle and needle not in record.display_name.lower():
            continue
        if classification is not None and record.classification != classification:
            continue
        if content_type_prefix and not record.content_type.startswith(content_type_prefix):
            continue
        matches.append(record)
    return matches


def usage_summary(records: Iterable[FileRecord]) -> Dict[str, object]:
    used = 0
    files = 0
    folders = 0
    trashed_bytes = 0
    by_classification = {item.value: 0 for item in Classification}
    for record in records:
        if record.is_folder:
            folders += 1
            continue
        files += 1
        used += record.size_bytes
        by_classification[record.classification.value] += record.size_bytes
        if record.is_trashed:
            trashed_bytes += record.size_bytes
    quota = BASE_QUOTA_BYTES + EARNED_QUOTA_BYTES
    return {
        "used_bytes": used,
        "trashed_bytes": trashed_bytes,
        "file_count": files,
        "folder_count": folders,
        "by_classification": by_classification,
        "base_quota_bytes": BASE_QUOTA_BYTES,
        "earned_quota_bytes": EARNED_QUOTA_BYTES,
        "quota_bytes": quota,
        "percent_used": round(used / quota * 100, 2),
    }
