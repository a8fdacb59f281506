"""Names of rotated artifacts: numbered and dated families and their compressed variants."""
from __future__ import annotations

import os
import re
from datetime import datetime
from typing import NamedTuple

from backup_runctl.config import ExitCode, InternalError

# a trailing extension from this list is part of the same logical artifact
COMPRESSION_EXTENSIONS = ("gz", "bz", "bz2", "lz", "xz")

COMPRESSION_KINDS = {
    "none": (),
    "gzip": ("gz",),
    "pigz": ("gz",),
    "bzip2": ("bz", "bz2"),
    "lzip": ("lz",),
    "xz": ("xz",),
    "all": COMPRESSION_EXTENSIONS,
}

_EXT_RE = r"(?:\.(?P<ext>" + "|".join(sorted(COMPRESSION_EXTENSIONS, key=len, reverse=True)) + r"))?"


class Member(NamedTuple):
    """One filesystem entry of an artifact family."""

    path: str
    key: str  # the index (numbered) or date string (dated), "" for the current artifact
    ext: str  # compression extension without the dot, "" for none

    @property
    def index(self) -> int:
        """The integer index of a numbered member."""
        return int(self.key)


class ArtifactFamily(NamedTuple):
    """A family of artifacts named ``prefix[sep<N|date>]suffix[.ext]``.

    ``prefix`` is the full path up to the number or date, without the
    separator; ``suffix`` follows the number or date and includes its own
    leading separator (e.g. ``".sql"``).
    """

    prefix: str
    sep: str
    suffix: str = ""

    @property
    def directory(self) -> str:
        """The directory that holds every member of the family."""
        return os.path.dirname(self.prefix) or "."

    @property
    def basename(self) -> str:
        """The prefix without its directory."""
        return os.path.basename(self.prefix)

    @property
    def current(self) -> str:
        """The path of the current (unnumbered) artifact."""
        return f"{self.prefix}{self.suffix}"

    def numbered_path(self, index: int, ext: str = "") -> str:
        """Return the path of member ``index``, with an optional compression extension."""
        return f"{self.prefix}{self.sep}{index}{self.suffix}{_dot(ext)}"

    def dated_path(self, date_string: str, ext: str = "") -> str:
        """Return the path of the member stamped ``date_string``."""
        return f"{self.prefix}{self.sep}{date_string}{self.suffix}{_dot(ext)}"

    def numbered_pattern(self) -> re.Pattern[str]:
        """Regex matching the basename of a numbered member."""
        if self.suffix[:1].isdigit():
            msg = (
                f"suffix '{self.suffix}' of '{self.prefix}' begins with a digit;"
                " no delimiter between the index and the suffix"
            )
            raise InternalError(msg, ExitCode.NO_DELIMITER_FOUND)
        return re.compile(
            "^"
            + re.escape(self.basename + self.sep)
            + r"(?P<key>[0-9]+)"
            + re.escape(self.suffix)
            + _EXT_RE
            + "$",
        )

    def dated_pattern(self) -> re.Pattern[str]:
        """Regex matching the basename of a dated member.

        Dates have no known format, so this is broad: anything between the
        separator and the suffix counts as the date.
        """
        return re.compile(
            "^"
            + re.escape(self.basename + self.sep)
            + r"(?P<key>.+?)"
            + re.escape(self.suffix)
            + _EXT_RE
            + "$",
        )

    def current_pattern(self) -> re.Pattern[str]:
        """Regex matching the basename of the current artifact."""
        return re.compile(
            "^" + re.escape(self.basename + self.suffix) + _EXT_RE + "$",
        )

    def numbered_members(self) -> list[Member]:
        """Return the numbered members, highest index first."""
        members = _scan(self.directory, self.numbered_pattern())
        return sorted(members, key=lambda m: (m.index, m.ext), reverse=True)

    def dated_members(self) -> list[Member]:
        """Return the dated members, oldest modification time first.

        The current artifact and its compressed variants are not members,
        even where the broad date pattern matches them (``out.gz``).
        """
        current = self.current_pattern()
        members = [
            m
            for m in _scan(self.directory, self.dated_pattern())
            if not current.match(os.path.basename(m.path))
        ]
        return sorted(members, key=lambda m: os.lstat(m.path).st_mtime)

    def current_members(self) -> list[Member]:
        """Return the current artifact and its compressed variants."""
        return [
            Member(m.path, "", m.ext)
            for m in _scan(self.directory, self.current_pattern())
        ]


def _dot(ext: str) -> str:
    return f".{ext}" if ext else ""


def _scan(directory: str, pattern: re.Pattern[str]) -> list[Member]:
    """Return the entries of ``directory`` whose names match ``pattern``."""
    try:
        names = os.listdir(directory)
    except FileNotFoundError:
        return []
    members = []
    for name in names:
        match = pattern.match(name)
        if match is None:
            continue
        key = match.groupdict().get("key") or ""
        members.append(Member(os.path.join(directory, name), key, match.group("ext") or ""))
    return members


def date_stamp(date_format: str, now: datetime | None = None) -> str:
    """Return the date string used to name a dated artifact."""
    if now is None:
        now = datetime.now()
    return now.strftime(date_format)


def artifact_path(
    family: ArtifactFamily,
    layout: str,
    date_format: str = "",
    now: datetime | None = None,
) -> str:
    """Return the path a new artifact is written to for ``layout``.

    Numbered, single and append layouts always write the current artifact;
    the dated layout writes a fresh date-stamped member.
    """
    if layout == "date":
        return family.dated_path(date_stamp(date_format or "%Y-%m-%d-%H%M%S", now))
    return family.current


def compressed_variants(path: str, kind: str) -> list[str]:
    """Return ``path`` plus the compressed names of it for ``kind``."""
    return [path] + [f"{path}.{ext}" for ext in COMPRESSION_KINDS[kind]]
