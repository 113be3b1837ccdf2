from __future__ import annotations

import asyncio
import codecs
import logging
from collections import deque
from typing import TYPE_CHECKING
from urllib.parse import unquote_to_bytes

from python_multipart.decoders import Base64Decoder, QuotedPrintableDecoder
from python_multipart.exceptions import FormParserError, MultipartParseError
from python_multipart.multipart import MultipartParser, QuerystringParser, parse_options_header

from .exceptions import LimitExceeded, UnsupportedContentType

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Mapping
    from typing import Any, TypedDict

    class Limits(TypedDict, total=False):
        parts: int
        fields: int
        files: int
        field_size: int
        field_name_size: int
        file_size: int

    class FormParserConfig(TypedDict):
        MAX_BODY_SIZE: float
        DEFAULT_CHARSET: str
        UPLOAD_ERROR_ON_BAD_CTE: bool
        MAX_MEMORY_FILE_SIZE: int

    OnFieldCallback = Callable[["Field"], None]
    OnFileCallback = Callable[[str, "FileStream", "str | None", str, str], None]
    OnErrorCallback = Callable[[Exception], None]
    OnFinishCallback = Callable[[], None]


# Unique missing object.
_missing = object()

DEFAULT_LIMITS: Limits = {
    "field_size": 1 * 1024 * 1024,
    "field_name_size": 100,
}


def get_header(headers: Mapping[str, Any], name: str) -> Any:
    """
    Look up a header by name, ignoring case.
    """
    value = headers.get(name)
    if value is not None:
        return value
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


class Field:
    """
    A form field as delivered to the consumer.  Data is written to it while
    the part is being parsed and decoded with ``charset`` on
    :meth:`finalize`.  Values longer than ``max_size`` bytes are cut off and
    flagged with :attr:`value_truncated`.
    """

    def __init__(
        self,
        field_name: str,
        charset: str = "utf-8",
        max_size: float = float("inf"),
        name_truncated: bool = False,
        encoding: str = "7bit",
        mime_type: str = "text/plain",
    ) -> None:
        self.field_name = field_name
        self.charset = charset
        self.max_size = max_size
        self.name_truncated = name_truncated
        self.value_truncated = False
        self.encoding = encoding
        self.mime_type = mime_type

        self._value: list[bytes] = []
        self._size = 0
        self._cache: Any = _missing

    @classmethod
    def from_value(cls, field_name: str, value: bytes, **kwargs: Any) -> Field:
        f = cls(field_name, **kwargs)
        f.write(value)
        f.finalize()
        return f

    def write(self, data: bytes) -> int:
        return self.on_data(data)

    def on_data(self, data: bytes) -> int:
        remaining = self.max_size - self._size
        if len(data) > remaining:
            data = data[: int(remaining)]
            self.value_truncated = True
        self._size += len(data)
        self._value.append(data)
        self._cache = _missing
        return len(data)

    def finalize(self) -> None:
        if self._cache is _missing:
            self._cache = b"".join(self._value).decode(self.charset, "replace")

    @property
    def value(self) -> str:
        self.finalize()
        return self._cache

    @property
    def length(self) -> int:
        """Length of the decoded value.  Always defined, unlike a file's."""
        return len(self.value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Field):
            return self.field_name == other.field_name and self.value == other.value
        else:
            return NotImplemented

    def __repr__(self) -> str:
        if len(self.value) > 97:
            v = repr(self.value[:97])[:-1] + "...'"
        else:
            v = repr(self.value)
        return f"{self.__class__.__name__}(field_name={self.field_name!r}, value={v})"


class FileStream:
    """
    A live, buffered stream of the bytes of one uploaded file.

    The parser writes into it while the part is being parsed; the consumer
    either reads it (``await stream.read()`` or ``async for chunk in
    stream``) or calls :meth:`resume` to throw the data away.  Every stream
    handed out must be consumed one way or the other, otherwise parsing
    stalls once the stream holds more than ``high_water`` bytes.

    Data past ``max_size`` bytes is dropped and :attr:`truncated` is set.

    Once more than ``high_water`` bytes are buffered, :meth:`drained` blocks
    the writer until the consumer catches up.
    """

    #: Files have no defined length; fields do.
    length = None

    def __init__(
        self,
        field_name: str,
        file_name: str | None,
        encoding: str = "7bit",
        mime_type: str = "text/plain",
        max_size: float = float("inf"),
        high_water: float = float("inf"),
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.field_name = field_name
        self.file_name = file_name
        self.encoding = encoding
        self.mime_type = mime_type
        self.max_size = max_size
        self.high_water = high_water

        self.bytes_received = 0
        self.buffered = 0
        self.truncated = False

        self._chunks: deque[bytes] = deque()
        self._waiters: list[asyncio.Future[None]] = []
        self._drain_waiters: list[asyncio.Future[None]] = []
        self._ended = False
        self._error: Exception | None = None
        self._discard = False

    @property
    def ended(self) -> bool:
        return self._ended

    def write(self, data: bytes) -> int:
        if self._ended:
            return 0

        remaining = self.max_size - self.bytes_received
        if len(data) > remaining:
            if not self.truncated:
                self.logger.warning("File %r exceeds %d bytes, truncating", self.file_name, self.max_size)
            self.truncated = True
            data = data[: int(remaining)]

        self.bytes_received += len(data)
        if data and not self._discard:
            self._chunks.append(data)
            self.buffered += len(data)
            self._wake(self._waiters)
        return len(data)

    def finalize(self) -> None:
        self._ended = True
        self._wake(self._waiters)

    def abort(self, exc: Exception) -> None:
        """
        Fail the stream: once the buffered data is consumed, reads raise
        ``exc``.  Does nothing if the stream already ended.
        """
        if self._ended:
            return
        self._error = exc
        self._ended = True
        self._wake(self._waiters)
        self._wake(self._drain_waiters)

    def resume(self) -> None:
        """
        Drain the stream: drop what is buffered and everything still to
        come.
        """
        self._discard = True
        self._chunks.clear()
        self.buffered = 0
        self._wake(self._drain_waiters)

    async def drained(self) -> None:
        """
        Wait until no more than ``high_water`` bytes are buffered, the
        stream is being discarded or it failed.
        """
        while self.buffered > self.high_water and not self._discard and self._error is None:
            waiter = asyncio.get_running_loop().create_future()
            self._drain_waiters.append(waiter)
            await waiter

    async def read(self) -> bytes:
        return b"".join([chunk async for chunk in self])

    def __aiter__(self) -> FileStream:
        return self

    async def __anext__(self) -> bytes:
        while True:
            if self._chunks:
                chunk = self._chunks.popleft()
                self.buffered -= len(chunk)
                if self.buffered <= self.high_water:
                    self._wake(self._drain_waiters)
                return chunk
            if self._error is not None:
                raise self._error
            if self._ended:
                raise StopAsyncIteration
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            await waiter

    def _wake(self, waiters: list[asyncio.Future[None]]) -> None:
        pending = waiters[:]
        del waiters[:]
        for waiter in pending:
            if not waiter.done():
                waiter.set_result(None)

    def __repr__(self) -> str:
        return "%s(field_name=%r, file_name=%r, mime_type=%r)" % (
            self.__class__.__name__,
            self.field_name,
            self.file_name,
            self.mime_type,
        )


class FormParser:
    """
    This class turns the callbacks of the underlying python-multipart
    parsers into form events:

        - on_field(field)
        - on_file(field_name, stream, file_name, encoding, mime_type)
        - on_error(exc)
        - on_finish()

    Files are announced as soon as their headers are parsed, so the stream
    is still being written to when ``on_file`` fires.  Fields are announced
    once complete.

    Count limits (``parts``, ``fields``, ``files``) end the form: the first
    part past a limit causes a single ``on_error`` with a
    :class:`LimitExceeded`, and nothing is emitted afterwards.  The same
    happens for parse errors.

    :param content_type: The Content-Type of the incoming request, without
                         parameters.
    :param boundary: The multipart boundary, required for multipart bodies.
    :param limits: A dictionary of limits, see :data:`DEFAULT_LIMITS`.
    :param config: Overrides for :attr:`DEFAULT_CONFIG`.
    """

    #: This is the default configuration for our form parser.
    #: Note: all file sizes should be in bytes.
    DEFAULT_CONFIG: FormParserConfig = {
        "MAX_BODY_SIZE": float("inf"),
        "DEFAULT_CHARSET": "utf-8",
        "UPLOAD_ERROR_ON_BAD_CTE": False,
        "MAX_MEMORY_FILE_SIZE": 1 * 1024 * 1024,
    }

    def __init__(
        self,
        content_type: str,
        on_field: OnFieldCallback | None,
        on_file: OnFileCallback | None,
        on_error: OnErrorCallback | None = None,
        on_finish: OnFinishCallback | None = None,
        boundary: bytes | str | None = None,
        limits: Limits | None = None,
        config: dict[Any, Any] = {},
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.content_type = content_type
        self.boundary = boundary
        self.bytes_received = 0

        self.on_field = on_field
        self.on_file = on_file
        self.on_error = on_error
        self.on_finish = on_finish

        self.limits: Limits = DEFAULT_LIMITS.copy()
        self.limits.update(limits or {})

        self.config: FormParserConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)  # type: ignore[typeddict-item]

        self.counts = {"parts": 0, "fields": 0, "files": 0}
        self.finished = False
        self.stopped = False

        # The file part currently receiving data, if any.
        self.current_stream: FileStream | None = None

        charset = self.config["DEFAULT_CHARSET"]
        parser: MultipartParser | QuerystringParser

        if content_type == "multipart/form-data":
            if boundary is None:
                self.logger.error("No boundary given")
                raise FormParserError("No boundary given")

            header_name: list[bytes] = []
            header_value: list[bytes] = []
            headers: dict[bytes, bytes] = {}

            part: Field | FileStream | None = None
            writer: Any = None
            skipping = False

            def on_part_begin() -> None:
                nonlocal headers, skipping
                headers = {}
                skipping = self.stopped or not self._count("parts")

            def on_part_data(data: bytes, start: int, end: int) -> None:
                if writer is not None:
                    writer.write(data[start:end])

            def on_part_end() -> None:
                nonlocal part, writer
                if writer is None:
                    return
                writer.finalize()

                if isinstance(part, Field):
                    self._emit_field(part)
                else:
                    self.current_stream = None
                part = None
                writer = None

            def on_header_field(data: bytes, start: int, end: int) -> None:
                header_name.append(data[start:end])

            def on_header_value(data: bytes, start: int, end: int) -> None:
                header_value.append(data[start:end])

            def on_header_end() -> None:
                headers[b"".join(header_name).lower()] = b"".join(header_value)
                del header_name[:]
                del header_value[:]

            def on_headers_finished() -> None:
                nonlocal part, writer
                if skipping or self.stopped:
                    return

                disp, options = parse_options_header(headers.get(b"content-disposition"))
                raw_name = options.get(b"name", b"")
                raw_file_name = options.get(b"filename")

                mime, ct_options = parse_options_header(headers.get(b"content-type"))
                mime_type = mime.decode("latin-1") or "text/plain"
                part_charset = ct_options.get(b"charset", b"").decode("latin-1") or charset
                try:
                    codecs.lookup(part_charset)
                except LookupError:
                    self.logger.warning("Unknown charset %r, using %r", part_charset, charset)
                    part_charset = charset
                encoding = headers.get(b"content-transfer-encoding", b"7bit").decode("latin-1").lower()

                field_name, name_truncated = self._decode_name(raw_name, part_charset)

                if raw_file_name is None:
                    if not self._count("fields"):
                        return
                    part = Field(
                        field_name,
                        charset=part_charset,
                        max_size=self.limits.get("field_size", float("inf")),
                        name_truncated=name_truncated,
                        encoding=encoding,
                        mime_type=mime_type,
                    )
                else:
                    if not self._count("files"):
                        return
                    part = FileStream(
                        field_name,
                        raw_file_name.decode(part_charset, "replace"),
                        encoding=encoding,
                        mime_type=mime_type,
                        max_size=self.limits.get("file_size", float("inf")),
                        high_water=self.config["MAX_MEMORY_FILE_SIZE"],
                    )

                if encoding in ("binary", "8bit", "7bit"):
                    writer = part
                elif encoding == "base64":
                    writer = Base64Decoder(part)
                elif encoding == "quoted-printable":
                    writer = QuotedPrintableDecoder(part)
                else:
                    self.logger.warning("Unknown Content-Transfer-Encoding: %r", encoding)
                    if self.config["UPLOAD_ERROR_ON_BAD_CTE"]:
                        raise FormParserError(f'Unknown Content-Transfer-Encoding "{encoding!r}"')
                    writer = part

                if isinstance(part, FileStream):
                    self.current_stream = part
                    self.logger.debug("Emitting file %r (%r)", part.file_name, part.field_name)
                    if self.on_file is not None:
                        self.on_file(part.field_name, part, part.file_name, encoding, mime_type)

            def on_end() -> None:
                self._finish()

            parser = MultipartParser(
                boundary,
                callbacks={
                    "on_part_begin": on_part_begin,
                    "on_part_data": on_part_data,
                    "on_part_end": on_part_end,
                    "on_header_field": on_header_field,
                    "on_header_value": on_header_value,
                    "on_header_end": on_header_end,
                    "on_headers_finished": on_headers_finished,
                    "on_end": on_end,
                },
                max_size=self.config["MAX_BODY_SIZE"],
            )

        elif content_type in ("application/x-www-form-urlencoded", "application/x-url-encoded"):
            name_buffer: list[bytes] = []
            data_buffer: list[bytes] = []

            def on_field_name(data: bytes, start: int, end: int) -> None:
                name_buffer.append(data[start:end])

            def on_field_data(data: bytes, start: int, end: int) -> None:
                data_buffer.append(data[start:end])

            def on_field_end() -> None:
                raw_name = _unquote(b"".join(name_buffer))
                raw_value = _unquote(b"".join(data_buffer))
                del name_buffer[:]
                del data_buffer[:]

                if self.stopped or not self._count("parts") or not self._count("fields"):
                    return

                field_name, name_truncated = self._decode_name(raw_name, charset)
                f = Field.from_value(
                    field_name,
                    raw_value,
                    charset=charset,
                    max_size=self.limits.get("field_size", float("inf")),
                    name_truncated=name_truncated,
                )
                self._emit_field(f)

            def on_end() -> None:
                self._finish()

            parser = QuerystringParser(
                callbacks={
                    "on_field_name": on_field_name,
                    "on_field_data": on_field_data,
                    "on_field_end": on_field_end,
                    "on_end": on_end,
                },
                max_size=self.config["MAX_BODY_SIZE"],
            )

        else:
            self.logger.warning("Unknown Content-Type: %r", content_type)
            raise UnsupportedContentType(f"Unsupported content type: {content_type}")

        self.parser = parser

    def _count(self, kind: str) -> bool:
        """
        Count one more part of the given kind.  Returns False, after emitting
        the limit error, if that goes past the configured limit.
        """
        self.counts[kind] += 1
        limit = self.limits.get(kind)
        if limit is not None and self.counts[kind] > limit:
            self.logger.warning("Reached %s limit (%d)", kind, limit)
            self.fail(LimitExceeded.for_limit(kind))
            return False
        return True

    def _decode_name(self, raw_name: bytes, charset: str) -> tuple[str, bool]:
        max_size = self.limits.get("field_name_size")
        truncated = max_size is not None and len(raw_name) > max_size
        if truncated:
            raw_name = raw_name[:max_size]
        return raw_name.decode(charset, "replace"), truncated

    def _emit_field(self, f: Field) -> None:
        if f.value_truncated:
            self.logger.warning("Value of field %r truncated", f.field_name)
        self.logger.debug("Emitting field %r", f.field_name)
        if self.on_field is not None:
            self.on_field(f)

    def _finish(self) -> None:
        if self.stopped or self.finished:
            return
        self.finished = True
        self.logger.debug("Form finished after %d bytes", self.bytes_received)
        if self.on_finish is not None:
            self.on_finish()

    def fail(self, exc: Exception) -> None:
        """
        End the form with an error: the open file stream (if any) is aborted
        and ``on_error`` fires.  Only the first failure is reported.
        """
        if self.stopped:
            return
        self.close(exc)
        if self.on_error is not None:
            self.on_error(exc)

    def write(self, data: bytes) -> int:
        if self.stopped:
            return 0
        self.bytes_received += len(data)
        try:
            return self.parser.write(data)
        except FormParserError as e:
            self.logger.warning("Error while parsing form: %r", e)
            self.fail(e)
            return 0

    def finalize(self) -> None:
        if self.stopped:
            return
        self.parser.finalize()
        if not self.finished and not self.stopped:
            self.fail(MultipartParseError("Unexpected end of form"))

    def close(self, exc: Exception | None = None) -> None:
        """
        Stop parsing.  Further writes are ignored and a file stream that is
        still receiving data is aborted with ``exc``.
        """
        self.stopped = True
        if self.current_stream is not None:
            self.current_stream.abort(exc or FormParserError("Form parser closed"))
            self.current_stream = None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(content_type={self.content_type!r}, parser={self.parser!r})"


def _unquote(value: bytes) -> bytes:
    return unquote_to_bytes(value.replace(b"+", b" "))


def create_form_parser(
    headers: Mapping[str, Any],
    on_field: OnFieldCallback | None,
    on_file: OnFileCallback | None,
    on_error: OnErrorCallback | None = None,
    on_finish: OnFinishCallback | None = None,
    limits: Limits | None = None,
    config: dict[Any, Any] = {},
) -> FormParser:
    """
    This function is a helper function to aid in creating a FormParser
    instance.  Given a dictionary-like headers object, it will determine
    the correct information needed, instantiate a FormParser with the
    appropriate values and given callbacks, and then return the
    corresponding parser.

    :param headers: A dictionary-like object of HTTP headers.  The only
                    required header is Content-Type; names are matched
                    case-insensitively.
    """
    content_type = get_header(headers, "Content-Type")
    if content_type is None:
        logging.getLogger(__name__).warning("No Content-Type header given")
        raise ValueError("No Content-Type header given!")

    content_type, params = parse_options_header(content_type)
    boundary = params.get(b"boundary")

    return FormParser(
        content_type.decode("latin-1"),
        on_field,
        on_file,
        on_error,
        on_finish,
        boundary=boundary,
        limits=limits,
        config=config,
    )
