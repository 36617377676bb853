"""
Binary-safe multipart/form-data extraction.

Only the part headers are treated as text. The payload is delimited by a
byte search for the boundary, so file contents may hold any byte sequence,
including CRLFs and strings that merely look like the boundary.
"""

import logging
import re
from urllib.parse import unquote

from skylink.transfer.models import UploadedFile

logger = logging.getLogger(__name__)

CRLF = b"\r\n"
HEADER_END = b"\r\n\r\n"

_FILENAME_EXT = re.compile(r"(?:^|;)\s*filename\*\s*=\s*([\w!#$%&+^`{}~.-]*)'[^']*'([^;\s]+)", re.I)
_FILENAME = re.compile(r'(?:^|;)\s*filename\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^;\s]*))', re.I)
_ESCAPED = re.compile(r"\\(.)")
_UNSAFE_CHARS = re.compile(r'[\x00-\x1f\x7f"]')


def sanitize_filename(filename: str | None, default: str) -> str:
    """Keep only the base name, stripped of characters unsafe in headers."""
    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_CHARS.sub("", name).strip()
    if name in ("", ".", ".."):
        return default
    return name


def parse_boundary(content_type: str | None) -> str | None:
    """Pull the boundary token out of a Content-Type header value."""
    if not content_type:
        return None
    idx = content_type.lower().find("boundary=")
    if idx == -1:
        return None
    boundary = content_type[idx + len("boundary="):].split(";", 1)[0].strip()
    if len(boundary) >= 2 and boundary.startswith('"') and boundary.endswith('"'):
        boundary = boundary[1:-1]
    return boundary or None


def _parse_headers(block: bytes) -> dict[str, str]:
    headers: dict[str, str] = {}
    for line in block.decode("utf-8", errors="replace").split("\r\n"):
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return headers


def _filename(disposition: str) -> str | None:
    """Return the filename attribute of a Content-Disposition value, if any."""
    match = _FILENAME_EXT.search(disposition)
    if match:
        charset = match.group(1) or "utf-8"
        try:
            return unquote(match.group(2), encoding=charset, errors="replace")
        except LookupError:
            return unquote(match.group(2))

    match = _FILENAME.search(disposition)
    if match is None:
        return None
    if match.group(1) is not None:
        return _ESCAPED.sub(r"\1", match.group(1))
    return match.group(2)


def _find_delimiter(body: bytes, delimiter: bytes, start: int) -> int:
    """
    Index of the CRLF that opens the next delimiter line, or -1.

    A candidate only counts when it is followed by ``--`` (close delimiter),
    CRLF, transport padding or the end of the buffer.
    """
    marker = CRLF + delimiter
    idx = body.find(marker, start)
    while idx != -1:
        after = idx + len(marker)
        tail = body[after:after + 2]
        if not tail or tail in (b"--", CRLF) or tail[:1] in (b" ", b"\t"):
            return idx
        idx = body.find(marker, idx + 1)
    return -1


def extract_file(body: bytes, boundary: str) -> UploadedFile | None:
    """
    Locate the file part of a multipart body.

    Returns the first part whose Content-Disposition carries a filename,
    or None if the body has no boundary, is truncated, or holds no file.
    """
    if not boundary:
        return None
    try:
        delimiter = b"--" + boundary.encode("latin-1")
    except UnicodeEncodeError:
        return None

    pos = body.find(delimiter)
    if pos == -1:
        logger.debug("Boundary not found in request body")
        return None
    pos += len(delimiter)

    while True:
        if body.startswith(b"--", pos):
            return None  # close delimiter reached without a file part

        line_end = body.find(CRLF, pos)
        if line_end == -1:
            return None
        headers_start = line_end + len(CRLF)

        if body.startswith(CRLF, headers_start):
            headers: dict[str, str] = {}
            payload_start = headers_start + len(CRLF)
        else:
            headers_end = body.find(HEADER_END, headers_start)
            if headers_end == -1:
                return None
            headers = _parse_headers(body[headers_start:headers_end])
            payload_start = headers_end + len(HEADER_END)

        payload_end = _find_delimiter(body, delimiter, payload_start)
        if payload_end == -1:
            logger.debug("Closing boundary not found after part headers")
            return None

        filename = _filename(headers.get("content-disposition", ""))
        if filename is not None:
            return UploadedFile(
                filename=filename,
                content_type=headers.get("content-type"),
                payload=body[payload_start:payload_end],
            )

        pos = payload_end + len(CRLF) + len(delimiter)
