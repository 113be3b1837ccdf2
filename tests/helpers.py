from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from typing import Union

    FormPart = Union[tuple[str, str], tuple[str, str, bytes, str]]


BOUNDARY = "----AwaitMultipartBoundary7MA4YWxkTrZu0gW"


def make_body(parts: list[FormPart], boundary: str = BOUNDARY) -> bytes:
    """
    Build a multipart/form-data body.  Fields are ``(name, value)``, files
    are ``(name, file_name, data, content_type)``.
    """
    out = []
    for part in parts:
        out.append(f"--{boundary}\r\n".encode("latin-1"))
        if len(part) == 2:
            name, value = part
            out.append(f'Content-Disposition: form-data; name="{name}"\r\n\r\n'.encode("utf-8"))
            out.append(value.encode("utf-8"))
        else:
            name, file_name, data, content_type = part
            out.append(
                f'Content-Disposition: form-data; name="{name}"; filename="{file_name}"\r\n'
                f"Content-Type: {content_type}\r\n\r\n".encode("utf-8")
            )
            out.append(data)
        out.append(b"\r\n")
    out.append(f"--{boundary}--\r\n".encode("latin-1"))
    return b"".join(out)


def make_headers(body: bytes, boundary: str = BOUNDARY) -> dict[str, str]:
    return {
        "content-type": f"multipart/form-data; boundary={boundary}",
        "content-length": str(len(body)),
    }


async def chunked(data: bytes, size: int = 13) -> AsyncIterator[bytes]:
    """Yield ``data`` in small chunks, giving other tasks a turn in between."""
    for i in range(0, len(data), size):
        await asyncio.sleep(0)
        yield data[i : i + size]


def request_parts() -> list[FormPart]:
    """
    The form used by most adapter tests: six fields under three names, and
    three files.  One of the field names is also a dict method name.
    """
    return [
        ("file_name_0", "super alpha file"),
        ("file_name_0", "super beta file"),
        ("file_name_0", "super gamma file"),
        ("file_name_1", "super gamma file"),
        ("file_name_1", "super delta file"),
        ("upload_file_0", "ab.dat", b"a" * 64, "application/octet-stream"),
        ("upload_file_1", "cd.dat", b"b" * 64, "application/octet-stream"),
        ("get", "overwrite"),
        ("upload_file_2", "ef.txt", b"c" * 64, "text/plain"),
    ]


def request(parts: list[FormPart] | None = None, size: int = 13) -> tuple[AsyncIterator[bytes], dict[str, str]]:
    body = make_body(request_parts() if parts is None else parts)
    return chunked(body, size), make_headers(body)
