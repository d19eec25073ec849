"""
Request path -> file on disk.

The request path is joined onto each candidate root in order (primary,
then the fallback nested inside it). Every candidate is normalised
lexically and must stay inside a configured root before the filesystem
is touched at all.
"""

import logging
import os
import stat
from dataclasses import dataclass
from typing import Sequence

import aiofiles.os

from .errors import Forbidden, NotFound


@dataclass(frozen=True)
class ResolvedFile:
    """A stat'ed regular file inside one of the roots."""

    path: str      # Absolute, normalised
    size: int      # Bytes
    mtime: float   # Seconds since epoch
    is_file: bool = True


def normalize_request_path(request_path: str, default_resource: str) -> str:
    """
    Turn the URL path (below the mount prefix) into a root-relative path.

    - "a//b///c" -> "a/b/c"
    - "" or "/"   -> default_resource
    - leading "/" is stripped so the result joins *onto* a root
    """
    while "//" in request_path:
        request_path = request_path.replace("//", "/")

    if request_path in ("", "/"):
        request_path = "/" + default_resource.lstrip("/")

    if request_path.startswith("/"):
        request_path = request_path[1:]
    return request_path


def is_within(path: str, roots: Sequence[str]) -> bool:
    """True if the absolute path equals a root or lies below one."""
    for root in roots:
        if path == root or path.startswith(root.rstrip(os.sep) + os.sep):
            return True
    return False


def candidate_paths(relative_path: str, roots: Sequence[str]) -> list:
    """
    Absolute candidates for relative_path, one per root, in lookup order.

    Raises:
        Forbidden: if any candidate escapes the roots after ".." collapsing
    """
    candidates = []
    for root in roots:
        # normpath collapses "..", "." and repeated separators lexically
        candidate = os.path.normpath(os.path.join(root, relative_path))
        if not is_within(candidate, roots):
            raise Forbidden(f"{relative_path!r} escapes {root}")
        candidates.append(candidate)
    return candidates


async def resolve(request_path: str, roots: Sequence[str], default_resource: str) -> ResolvedFile:
    """
    Resolve a request path to a regular file.

    Args:
        request_path: Decoded URL path below the mount prefix
        roots: Absolute candidate roots, tried in order
        default_resource: Served for an empty or root path

    Returns:
        ResolvedFile for the first candidate that is a regular file.

    Raises:
        Forbidden: the path escapes the sandbox (checked before any stat)
        NotFound: no candidate is a regular file
    """
    relative_path = normalize_request_path(request_path, default_resource)
    if "\x00" in relative_path:
        raise NotFound("embedded NUL in path")

    for candidate in candidate_paths(relative_path, roots):
        try:
            st = await aiofiles.os.stat(candidate)
        except OSError as e:
            # Missing, unreadable or a path component is not a directory:
            # all mean "not here", try the next root
            logging.debug(f"stat {candidate} failed: {e}")
            continue

        # Directories, sockets, devices... are never served
        if not stat.S_ISREG(st.st_mode):
            continue

        return ResolvedFile(path=candidate, size=st.st_size, mtime=st.st_mtime)

    raise NotFound(request_path)
