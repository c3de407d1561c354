"""Locate the single file part inside a raw multipart/form-data body.

This is a scan over the body bytes, not a general multipart parser. It finds
the first part carrying a ``filename="..."`` attribute and reports where its
payload sits, which is enough for browser form uploads of one file.
"""

from dataclasses import dataclass
from typing import Optional, Union

MULTIPART_FORM_DATA = "multipart/form-data"

_BOUNDARY_MARKER = "boundary="
_DISPOSITION_MARKER = b"Content-Disposition"
_FILENAME_MARKER = b'filename="'
_HEADER_TERMINATOR = b"\r\n\r\n"
_LINE_BREAK = b"\r\n"


@dataclass(frozen=True)
class MultipartSpec:
    filename: str
    data_start: int
    data_end: int

    def payload(self, body: bytes) -> bytes:
        return body[self.data_start:self.data_end]

    @property
    def size(self) -> int:
        return self.data_end - self.data_start


@dataclass(frozen=True)
class MultipartInvalid:
    reason: str
    message: str


def parse_boundary(content_type: Optional[str]) -> Optional[str]:
    if not content_type or _BOUNDARY_MARKER not in content_type:
        return None
    boundary = content_type.split(_BOUNDARY_MARKER, 1)[1]
    boundary = boundary.split(";", 1)[0].strip()
    if len(boundary) >= 2 and boundary[0] == boundary[-1] == '"':
        boundary = boundary[1:-1]
    return boundary or None


def extract(
    body: bytes, content_type: Optional[str]
) -> Union[MultipartSpec, MultipartInvalid]:
    if not content_type or not content_type.startswith(MULTIPART_FORM_DATA):
        return MultipartInvalid("content_type", "Invalid content type.")

    boundary = parse_boundary(content_type)
    if boundary is None:
        return MultipartInvalid("boundary", "Invalid multipart data.")
    delimiter = b"--" + boundary.encode("latin-1", errors="replace")

    header_index = body.find(_DISPOSITION_MARKER)
    if header_index == -1:
        return MultipartInvalid("disposition", "Invalid multipart data.")

    filename_index = body.find(_FILENAME_MARKER, header_index)
    if filename_index == -1:
        return MultipartInvalid("filename", "No file uploaded.")
    filename_index += len(_FILENAME_MARKER)

    filename_end = body.find(b'"', filename_index)
    if filename_end == -1:
        return MultipartInvalid("empty_filename", "No file name provided.")
    filename = body[filename_index:filename_end].decode("utf-8", errors="replace").strip()
    if not filename:
        return MultipartInvalid("empty_filename", "No file name provided.")

    data_start = body.find(_HEADER_TERMINATOR, header_index)
    if data_start == -1:
        return MultipartInvalid("header_terminator", "Invalid multipart data.")
    data_start += len(_HEADER_TERMINATOR)

    data_end = body.find(delimiter, data_start)
    if data_end == -1:
        # Truncated body: keep everything that arrived.
        data_end = len(body)
    elif data_end - len(_LINE_BREAK) >= data_start and body[
        data_end - len(_LINE_BREAK):data_end
    ] == _LINE_BREAK:
        data_end -= len(_LINE_BREAK)

    return MultipartSpec(filename=filename, data_start=data_start, data_end=data_end)
