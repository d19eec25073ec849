"""
Decide how one file is delivered: full or partial, gzip or identity,
and at which read granularity. Pure: same inputs, same plan.
"""

from dataclasses import dataclass
from email.utils import formatdate
from typing import List, Mapping, Optional, Tuple

from .config import ServerConfig
from .content_types import classify
from .errors import RangeNotSatisfiable
from .paths import ResolvedFile
from .ranges import ByteRange, parse_range, unsatisfiable_content_range

CACHE_CONTROL = "public, max-age=3600"


@dataclass(frozen=True)
class DeliveryPlan:
    status: int                       # 200, 206 or 416
    content_type: str
    content_length: Optional[int]     # None when gzip-encoded
    content_encoding: Optional[str]   # None or "gzip"
    byte_window: Optional[ByteRange]
    chunk_size: int
    file_size: int
    last_modified: str

    @property
    def has_body(self) -> bool:
        return self.status != 416

    def headers(self) -> List[Tuple[str, str]]:
        """Response headers, in the order they are sent."""
        headers = [("Content-Type", self.content_type)]

        if self.status == 416:
            headers.append(("Content-Range", unsatisfiable_content_range(self.file_size)))
            headers.append(("Content-Length", "0"))
        else:
            if self.content_length is not None:
                headers.append(("Content-Length", str(self.content_length)))
            if self.byte_window is not None:
                headers.append(("Content-Range", self.byte_window.content_range(self.file_size)))

        if self.content_encoding:
            headers.append(("Content-Encoding", self.content_encoding))
            headers.append(("Vary", "Accept-Encoding"))

        headers.append(("Cache-Control", CACHE_CONTROL))
        headers.append(("Accept-Ranges", "bytes"))
        headers.append(("Last-Modified", self.last_modified))
        return headers


def chunk_size_for(size: int, config: ServerConfig) -> int:
    """Big files are read in half-size chunks to keep peak memory down."""
    if size > config.large_file_threshold:
        return config.chunk_size // 2
    return config.chunk_size


def accepts_gzip(headers: Mapping[str, str]) -> bool:
    return "gzip" in headers.get("accept-encoding", "")


def should_compress(size: int, compressible: bool, headers: Mapping[str, str],
                    config: ServerConfig) -> bool:
    return (
        accepts_gzip(headers)
        and compressible
        and size > config.gzip_min_size
        and size < config.gzip_max_size
    )


def plan_delivery(resolved: ResolvedFile, headers: Mapping[str, str],
                  config: ServerConfig) -> DeliveryPlan:
    """
    Build the DeliveryPlan for a resolved file.

    Args:
        resolved: File to deliver
        headers: Request headers with lowercased names
        config: Thresholds and chunk sizes

    Decision order:
        1. Range header present -> 206 (never gzip) or 416
        2. Otherwise 200, gzip only if every compression condition holds
        3. Chunk size from the file size alone
    """
    content_type, compressible = classify(resolved.path)
    base = dict(
        content_type=content_type,
        chunk_size=chunk_size_for(resolved.size, config),
        file_size=resolved.size,
        last_modified=formatdate(resolved.mtime, usegmt=True),
    )

    range_header = headers.get("range")
    if range_header is not None:
        try:
            window = parse_range(range_header, resolved.size)
        except RangeNotSatisfiable:
            return DeliveryPlan(status=416, content_length=None, content_encoding=None,
                                byte_window=None, **base)
        # Ranges address the stored bytes, so no on-the-fly encoding here
        return DeliveryPlan(status=206, content_length=window.length, content_encoding=None,
                            byte_window=window, **base)

    if should_compress(resolved.size, compressible, headers, config):
        return DeliveryPlan(status=200, content_length=None, content_encoding="gzip",
                            byte_window=None, **base)

    return DeliveryPlan(status=200, content_length=resolved.size, content_encoding=None,
                        byte_window=None, **base)
