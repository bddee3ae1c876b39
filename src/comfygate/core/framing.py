"""Framed multi-artifact stream format.

One HTTP response carries any number of artifacts.  Each artifact is
written as::

    Content-Type: <mime>\\r\\n\\r\\n
    Content-Disposition: attachment; filename="<name>"\\r\\n\\r\\n
    <raw bytes>
    \\r\\n--BLOB_SEPARATOR--\\r\\n

There is no global terminator; the stream simply ends after the last
separator.  Consumers split on :data:`SEPARATOR` to recover each artifact
and its two header lines without knowing counts or sizes up front.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

SEPARATOR = b"\r\n--BLOB_SEPARATOR--\r\n"
HEADER_TERMINATOR = b"\r\n\r\n"

STREAM_MEDIA_TYPE = "application/octet-stream"
STREAM_FILENAME = "generated_images.bin"

_DISPOSITION_RE = re.compile(r'Content-Disposition: attachment; filename="(?P<name>.*)"')


@dataclass
class Frame:
    """One artifact recovered from a framed stream."""

    content_type: str
    filename: str
    content: bytes


def frame_header(content_type: str, filename: str) -> bytes:
    """Return the two header lines written before an artifact's bytes."""
    return (
        f"Content-Type: {content_type}\r\n\r\n"
        f'Content-Disposition: attachment; filename="{filename}"\r\n\r\n'
    ).encode("utf-8")


def split_frames(data: bytes) -> list[Frame]:
    """Split a complete framed stream into its artifacts.

    Args:
        data: The full response body.

    Returns:
        Frames in stream order.

    Raises:
        ValueError: If a frame does not start with the two header lines.
    """
    frames: list[Frame] = []
    for chunk in data.split(SEPARATOR):
        if not chunk:
            continue

        type_line, sep, rest = chunk.partition(HEADER_TERMINATOR)
        disposition_line, sep2, content = rest.partition(HEADER_TERMINATOR)
        if not sep or not sep2 or not type_line.startswith(b"Content-Type: "):
            raise ValueError("Malformed frame: missing Content-Type header")

        match = _DISPOSITION_RE.fullmatch(disposition_line.decode("utf-8"))
        if match is None:
            raise ValueError("Malformed frame: missing Content-Disposition header")

        frames.append(
            Frame(
                content_type=type_line[len(b"Content-Type: ") :].decode("utf-8"),
                filename=match.group("name"),
                content=content,
            )
        )
    return frames
