__version__ = "0.1.0"

from .exceptions import LimitExceeded, PartsError, UnsupportedContentType
from .multipart import Field, FileStream, FormParser, create_form_parser
from .parts import Parts, parse
from .result import Result

__all__ = (
    "Field",
    "FileStream",
    "FormParser",
    "LimitExceeded",
    "Parts",
    "PartsError",
    "Result",
    "UnsupportedContentType",
    "create_form_parser",
    "parse",
)
