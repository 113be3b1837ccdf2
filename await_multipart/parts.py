from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import TYPE_CHECKING

from .multipart import create_form_parser, get_header
from .result import Result

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Generator, Mapping
    from typing import Any, Protocol, Union

    from .multipart import Field, FileStream, Limits

    class SupportsRead(Protocol):
        def read(self, __n: int) -> bytes: ...

    Part = Union[Field, FileStream]
    CheckField = Callable[[str, str], "Exception | None | Awaitable[Exception | None]"]
    CheckFile = Callable[[str, FileStream, "str | None"], "Exception | None | Awaitable[Exception | None]"]


class Parts:
    """
    Iterate over the parts of a form, one ``await`` at a time::

        parts = parse(request.stream(), request.headers)
        while (part := await parts):
            if part.length is None:
                data = await part.read()    # a FileStream
            else:
                print(part.field_name, part.value)

    The request body is pumped through a :class:`FormParser` in a background
    task; every field, file and error it produces is relayed, in order, into
    a :class:`Result` that the consumer awaits.  Awaiting yields the next
    part, None once the form is complete, or raises the error that ended the
    form (a limit, a rejected part, a parse or transport error).

    With ``auto_fields``, fields are additionally collected into
    :attr:`field` (name to value, or to a list of values once a name is seen
    twice) and :attr:`fields` (every ``(name, value)`` pair in order).

    ``check_field(name, value)`` and ``check_file(field_name, stream,
    file_name)`` run before a part is queued.  Returning (or raising) an
    exception ends the form with that exception.  Either may be a coroutine
    function.
    """

    def __init__(
        self,
        source: AsyncIterable[bytes] | SupportsRead,
        headers: Mapping[str, Any],
        auto_fields: bool = False,
        limits: Limits | None = None,
        check_field: CheckField | None = None,
        check_file: CheckFile | None = None,
        config: dict[Any, Any] = {},
        chunk_size: int = 1048576,
    ) -> None:
        self.logger = logging.getLogger(__name__)
        self.auto_fields = auto_fields
        self.check_field = check_field
        self.check_file = check_file
        self.chunk_size = chunk_size

        self.field: dict[str, str | list[str]] = {}
        self.fields: list[tuple[str, str]] = []

        self._result = Result()
        self._backlog: deque[tuple[Callable[..., Awaitable[None]], tuple[Any, ...]]] = deque()
        self._streams: list[FileStream] = []
        self._detached = False
        self._exhausted = False

        self.parser = create_form_parser(
            headers,
            self._on_field,
            self._on_file,
            self._on_error,
            self._on_finish,
            limits=limits,
            config=config,
        )

        content_length = get_header(headers, "Content-Length")
        self._content_length = float("inf") if content_length is None else int(content_length)

        self._task = asyncio.get_running_loop().create_task(self._pump(source))

    # Producer callbacks.  They run inside FormParser.write(), so they only
    # record the event; _relay() handles them once the write returns.

    def _on_field(self, field: Field) -> None:
        self._backlog.append((self._relay_field, (field,)))

    def _on_file(
        self, field_name: str, stream: FileStream, file_name: str | None, encoding: str, mime_type: str
    ) -> None:
        self._backlog.append((self._relay_file, (field_name, stream, file_name)))

    def _on_error(self, exc: Exception) -> None:
        self._backlog.append((self._relay_error, (exc,)))

    def _on_finish(self) -> None:
        self._backlog.append((self._relay_finish, ()))

    async def _pump(self, source: AsyncIterable[bytes] | SupportsRead) -> None:
        self.logger.info("Parsing %s form", self.parser.content_type)
        try:
            async for chunk in self._chunks(source):
                self.parser.write(chunk)
                await self._relay()
                if self._detached:
                    break
                await self._drain()
            else:
                self.parser.finalize()
                await self._relay()
        except Exception as e:
            self.logger.warning("Error while reading form: %r", e)
            self._detach(e)

    async def _chunks(self, source: AsyncIterable[bytes] | SupportsRead) -> AsyncIterator[bytes]:
        if hasattr(source, "read"):
            bytes_read = 0
            while True:
                max_readable = int(min(self._content_length - bytes_read, self.chunk_size))
                buff = await asyncio.to_thread(source.read, max_readable)
                if buff:
                    yield buff
                bytes_read += len(buff)

                if len(buff) != max_readable or bytes_read == self._content_length:
                    break
        else:
            async for chunk in source:
                if chunk:
                    yield chunk

    async def _relay(self) -> None:
        while self._backlog and not self._detached:
            handler, args = self._backlog.popleft()
            await handler(*args)

    async def _drain(self) -> None:
        # Hold off reading more of the body while a file is over its buffer.
        for stream in self._streams:
            await stream.drained()
        self._streams = [s for s in self._streams if s.buffered or not s.ended]

    async def _relay_field(self, field: Field) -> None:
        err = await self._check(self.check_field, field.field_name, field.value)
        if err is not None:
            self.logger.warning("Field %r rejected: %r", field.field_name, err)
            self._detach(err)
            return

        if self.auto_fields:
            self._collect(field)
        self._result.add(field)

    async def _relay_file(self, field_name: str, stream: FileStream, file_name: str | None) -> None:
        err = await self._check(self.check_file, field_name, stream, file_name)
        if err is not None:
            self.logger.warning("File %r rejected: %r", file_name, err)
            stream.resume()
            self._detach(err)
            return

        self._streams.append(stream)
        self._result.add(stream)

    async def _relay_error(self, exc: Exception) -> None:
        self._detach(exc)

    async def _relay_finish(self) -> None:
        self.logger.info("Form complete")
        self._result.close(None)

    async def _check(self, hook: Callable[..., Any] | None, *args: Any) -> Exception | None:
        if hook is None:
            return None
        try:
            rv = hook(*args)
            if inspect.isawaitable(rv):
                rv = await rv
        except Exception as e:
            return e
        return rv if isinstance(rv, Exception) else None

    def _collect(self, field: Field) -> None:
        name, value = field.field_name, field.value
        self.fields.append((name, value))

        if name not in self.field:
            self.field[name] = value
            return

        existing = self.field[name]
        if isinstance(existing, list):
            existing.append(value)
        else:
            self.field[name] = [existing, value]

    def _detach(self, exc: Exception) -> None:
        """
        Stop relaying and end the sequence with ``exc``.
        """
        if self._detached:
            return
        self._detached = True
        self._backlog.clear()
        self.parser.close(exc)
        self._result.close(exc)

    async def _next(self) -> Part | None:
        if self._exhausted:
            return None
        part = await self._result
        if part is None:
            self._exhausted = True
            if self._result.waiting:
                # Other pulls were already waiting; end them too.
                self._result.close(None)
        return part

    def __await__(self) -> Generator[Any, None, Part | None]:
        return self._next().__await__()

    def __aiter__(self) -> Parts:
        return self

    async def __anext__(self) -> Part:
        part = await self._next()
        if part is None:
            raise StopAsyncIteration
        return part

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(parser={self.parser!r}, result={self._result!r})"


def parse(
    source: AsyncIterable[bytes] | SupportsRead,
    headers: Mapping[str, Any],
    **options: Any,
) -> Parts:
    """
    Start parsing a form body and return the awaitable :class:`Parts`.  Must
    be called from a running event loop.

    :param source: The request body, either an async iterable of byte chunks
                   or a file-like object with a ``read(n)`` method.
    :param headers: The request headers.  Content-Type is required;
                    Content-Length, if given, bounds reads from a file-like
                    source.
    :param options: Keyword arguments for :class:`Parts`: ``auto_fields``,
                    ``limits``, ``check_field``, ``check_file``, ``config``
                    and ``chunk_size``.
    """
    return Parts(source, headers, **options)
