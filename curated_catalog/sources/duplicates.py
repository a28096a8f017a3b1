from __future__ import annotations

import re
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

# A transcoded copy of a/b/x.mkv lives under a/b/x.converted/
CONVERTED_MARKERS = (".converted/", ".converted\\")
_CONVERTED_TAIL_RE = re.compile(r"\.converted[\\/].*$")


def is_converted(path: str) -> bool:
    return any(marker in path for marker in CONVERTED_MARKERS)


def original_prefix(path: str) -> str:
    """Path text before the ``.converted`` segment."""
    return _CONVERTED_TAIL_RE.sub("", path)


def _record_path(record) -> str:
    return record.path or record.url or ""


def filter_duplicates(
    records: Iterable[T], key: Optional[Callable[[T], str]] = None
) -> list[T]:
    """Drop converted copies whose original file is also present.

    Stable: surviving records keep their input order. A converted file with
    no original next to it is kept.
    """
    key = key or _record_path
    records = list(records)

    originals = {key(r) for r in records if not is_converted(key(r))}

    kept = []
    for r in records:
        path = key(r)
        if not is_converted(path):
            kept.append(r)
            continue
        prefix = original_prefix(path)
        if not any(o.startswith(prefix) for o in originals):
            kept.append(r)
    return kept
