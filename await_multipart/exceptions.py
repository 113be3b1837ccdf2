from __future__ import annotations

from python_multipart.exceptions import FormParserError


class PartsError(FormParserError):
    """Base error class for errors raised while producing form parts."""

    #: HTTP-style status code suggested for this error.
    status = 400

    #: Short machine-readable code, or None if the error has none.
    code: str | None = None


class LimitExceeded(PartsError):
    """This exception is delivered when the form contains more parts, fields
    or files than the configured limits allow.
    """

    status = 413

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code

    @classmethod
    def for_limit(cls, name: str) -> LimitExceeded:
        return cls(f"Reach {name} limit", code=f"Request_{name}_limit")

    @property
    def message(self) -> str:
        return str(self)


class UnsupportedContentType(PartsError):
    """Raised when the request body is neither multipart/form-data nor
    urlencoded.
    """

    status = 415
