"""Rotation and pruning of numbered and dated artifact families.

Every function works on files and directories alike, and treats a
compressed variant (``backup.3.gz``) as the same slot as its plain name.
"""
from __future__ import annotations

import os
import shutil
import time

from backup_runctl.naming import ArtifactFamily, compressed_variants

SECONDS_PER_DAY = 86400


def remove_path(path: str) -> None:
    """Remove a file, symlink or directory tree."""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.remove(path)


def remove_with_compressed(path: str, kind: str = "all") -> None:
    """Remove ``path`` and its compressed variants for ``kind`` (gzip, bzip2, ...)."""
    for candidate in compressed_variants(path, kind):
        if os.path.lexists(candidate):
            remove_path(candidate)


def age_in_days(path: str, now: float | None = None) -> int:
    """Return the whole number of days since ``path`` was modified."""
    if now is None:
        now = time.time()
    return int((now - os.lstat(path).st_mtime) // SECONDS_PER_DAY)


def older_than_days(path: str, days: int, now: float | None = None) -> bool:
    """True if ``path`` is more than ``days`` whole days old (like ``find -mtime +N``)."""
    return age_in_days(path, now) > days


def rotate_numbered(family: ArtifactFamily) -> list[tuple[str, str]]:
    """Shift every numbered member up by one and move the current artifact to 1.

    Members are renamed highest index first, so no rename can overwrite a
    member that has not been moved yet; gaps in the sequence are kept.
    Returns the ``(old, new)`` renames in the order they were made.
    """
    renames = []
    for member in family.numbered_members():
        new = family.numbered_path(member.index + 1, member.ext)
        os.rename(member.path, new)
        renames.append((member.path, new))

    for member in family.current_members():
        new = family.numbered_path(1, member.ext)
        os.rename(member.path, new)
        renames.append((member.path, new))
    return renames


def prune_numbered(
    family: ArtifactFamily,
    max_count: int,
    max_days: int,
    now: float | None = None,
) -> list[str]:
    """Delete members with index >= ``max_count`` or older than ``max_days``.

    0 disables either limit. Returns the removed paths.
    """
    if max_count == 0 and max_days == 0:
        return []

    removed = []
    for member in family.numbered_members():
        if max_count != 0 and member.index >= max_count:
            remove_path(member.path)
            removed.append(member.path)
            continue
        if max_days != 0 and older_than_days(member.path, max_days, now):
            remove_path(member.path)
            removed.append(member.path)
    return removed


def prune_dated(
    family: ArtifactFamily,
    max_days: int,
    now: float | None = None,
) -> list[str]:
    """Delete dated members older than ``max_days`` (0 = keep everything).

    Pruning dated families by count is not supported: the date format is
    arbitrary, so members can't be reliably ordered by their names.
    """
    if max_days == 0:
        return []

    removed = []
    for member in family.dated_members():
        if older_than_days(member.path, max_days, now):
            remove_path(member.path)
            removed.append(member.path)
    return removed


def prune(
    layout: str,
    family: ArtifactFamily,
    max_count: int,
    max_days: int,
    now: float | None = None,
) -> list[str]:
    """Prune ``family`` according to ``layout``; single and append have nothing to prune."""
    if layout == "number":
        return prune_numbered(family, max_count, max_days, now)
    if layout == "date":
        return prune_dated(family, max_days, now)
    return []


def rotate_prune(
    layout: str,
    family: ArtifactFamily,
    max_count: int,
    max_days: int,
    now: float | None = None,
) -> list[str]:
    """Rotate (numbered layout only) and then prune ``family``."""
    if layout == "number":
        rotate_numbered(family)
    return prune(layout, family, max_count, max_days, now)

