"""Derived read state over ledger snapshots.

Nothing here touches the store: the same rows always resolve to the same
answer, so callers can recompute freely after every live update.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

from .ledger import LedgerRow, live_uploads
from .models import AuditAction

Roster = Union[Iterable[str], Mapping[str, Iterable[str]]]

_PREVIEW = AuditAction.PREVIEW.value
_DOWNLOAD = AuditAction.DOWNLOAD.value


@dataclass(frozen=True)
class SubjectKey:
    project_id: str
    folder: Optional[str]
    name: str


@dataclass(frozen=True)
class Completion:
    uploader: Optional[str]
    viewers: frozenset
    downloaders: frozenset
    threshold: int

    @property
    def fully_viewed(self) -> bool:
        return len(self.viewers) >= self.threshold

    @property
    def fully_downloaded(self) -> bool:
        return len(self.downloaders) >= self.threshold


@dataclass(frozen=True)
class ReadState:
    unread_uploads: Tuple[LedgerRow, ...]
    completion: Mapping[SubjectKey, Completion]

    def is_unread(self, project_id: str, name: str) -> bool:
        return any(
            row.project_id == project_id and row.subject_name == name
            for row in self.unread_uploads
        )

    def fully_viewed(self, key: SubjectKey) -> bool:
        found = self.completion.get(key)
        return bool(found and found.fully_viewed)

    def fully_downloaded(self, key: SubjectKey) -> bool:
        found = self.completion.get(key)
        return bool(found and found.fully_downloaded)


def _roster_for(roster: Roster, project_id: str) -> Sequence[str]:
    if isinstance(roster, Mapping):
        return list(roster.get(project_id, ()))
    return list(roster)


def completion_threshold(
    roster: Iterable[str], uploader: Optional[str], roster_size: Optional[int] = None
) -> int:
    """Number of distinct non-uploader members needed for completion.

    A fixed ``roster_size`` counts the uploader as one of its members.
    """
    if roster_size is not None:
        others = roster_size - 1
    else:
        others = len(set(roster) - {uploader})
    return max(others, 1)


def _newest_first(rows: Iterable[LedgerRow]) -> Tuple[LedgerRow, ...]:
    return tuple(
        sorted(
            rows,
            key=lambda row: (row.acted_at, row.project_id, row.subject_name or "", row.id),
            reverse=True,
        )
    )


def unread_uploads(rows: Sequence[LedgerRow], viewer: str) -> Tuple[LedgerRow, ...]:
    """Uploads by others that ``viewer`` has neither previewed nor downloaded.

    Observations count across folders: the file name is the identity within
    a project. When a name was uploaded more than once only the newest upload
    is reported.
    """
    seen = {
        (row.project_id, row.subject_name)
        for row in rows
        if row.action in (_PREVIEW, _DOWNLOAD) and viewer in row.usernames
    }
    newest: Dict[tuple, LedgerRow] = {}
    for row in _newest_first(live_uploads(rows)):
        key = (row.project_id, row.subject_name)
        if key in newest:
            continue
        newest[key] = row
    return tuple(
        row
        for key, row in newest.items()
        if row.actor != viewer and key not in seen
    )


def completion_for(
    rows: Sequence[LedgerRow], roster: Roster, *, roster_size: Optional[int] = None
) -> Dict[SubjectKey, Completion]:
    uploaders: Dict[SubjectKey, str] = {}
    for row in sorted(live_uploads(rows), key=lambda r: (r.acted_at, r.id)):
        uploaders.setdefault(SubjectKey(row.project_id, row.folder, row.subject_name), row.actor)

    observed: Dict[Tuple[SubjectKey, str], frozenset] = {}
    for row in rows:
        if row.action in (_PREVIEW, _DOWNLOAD) and row.subject_name:
            key = SubjectKey(row.project_id, row.folder, row.subject_name)
            observed[(key, row.action)] = observed.get((key, row.action), frozenset()) | row.usernames

    result: Dict[SubjectKey, Completion] = {}
    for key, uploader in uploaders.items():
        members = _roster_for(roster, key.project_id)
        result[key] = Completion(
            uploader=uploader,
            viewers=observed.get((key, _PREVIEW), frozenset()) - {uploader},
            downloaders=observed.get((key, _DOWNLOAD), frozenset()) - {uploader},
            threshold=completion_threshold(members, uploader, roster_size),
        )
    return result


def resolve(
    rows: Sequence[LedgerRow],
    roster: Roster,
    viewer: str,
    *,
    roster_size: Optional[int] = None,
) -> ReadState:
    rows = list(rows)
    return ReadState(
        unread_uploads=unread_uploads(rows, viewer),
        completion=completion_for(rows, roster, roster_size=roster_size),
    )
