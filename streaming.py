"""Serve cached MP4 files with HTTP byte-range support."""

import logging
import os
import re
from typing import Iterator, Optional, Tuple

from flask import Response  # pylint: disable=import-error

from errors import NotFoundError, RangeNotSatisfiableError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
VIDEO_MIMETYPE = "video/mp4"

_RANGE_PATTERN = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Return the inclusive ``(start, end)`` span requested by ``header``.

    ``None`` means the header is absent or unusable and the whole file should
    be sent. An end beyond the file is clamped; a start at or beyond the end
    raises :class:`RangeNotSatisfiableError`.
    """

    if not header:
        return None
    match = _RANGE_PATTERN.match(header)
    if not match:
        return None
    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiableError(size)
        return max(size - suffix, 0), size - 1

    start = int(first)
    end = int(last) if last else size - 1
    if end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiableError(size)
    return start, min(end, size - 1)


def _read_span(path: str, start: int, length: int) -> Iterator[bytes]:
    with open(path, "rb") as handle:
        handle.seek(start)
        remaining = length
        while remaining > 0:
            chunk = handle.read(min(CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def send_artifact(path: str, range_header: Optional[str] = None) -> Response:
    """Build a streaming response for ``path`` honouring ``range_header``."""

    try:
        size = os.path.getsize(path)
    except FileNotFoundError as exc:
        raise NotFoundError("The cached video file was not found; it may have been removed.") from exc

    span = parse_range(range_header, size)
    headers = {"Accept-Ranges": "bytes"}
    if span is None:
        headers["Content-Length"] = str(size)
        logger.debug("Sending %s in full (%d bytes).", os.path.basename(path), size)
        return Response(
            _read_span(path, 0, size),
            status=200,
            headers=headers,
            mimetype=VIDEO_MIMETYPE,
            direct_passthrough=True,
        )

    start, end = span
    length = end - start + 1
    headers["Content-Range"] = f"bytes {start}-{end}/{size}"
    headers["Content-Length"] = str(length)
    logger.debug("Sending %s bytes %d-%d/%d.", os.path.basename(path), start, end, size)
    return Response(
        _read_span(path, start, length),
        status=206,
        headers=headers,
        mimetype=VIDEO_MIMETYPE,
        direct_passthrough=True,
    )
