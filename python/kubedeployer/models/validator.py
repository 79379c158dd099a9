"""
kubedeployer/models/validator.py

Validation helper built on pydantic's TypeAdapter, used wherever untyped
JSON (generated documents, kubectl output) enters the deployer.
"""

from typing import Any, Dict
from pydantic import ValidationError, TypeAdapter

from kubedeployer.errors import ParseError

_JSON_OBJECT: TypeAdapter[Dict[str, Any]] = TypeAdapter(Dict[str, Any])


def require_json_object(obj: Any, what: str) -> Dict[str, Any]:
    """Return `obj` if it is a JSON object (str-keyed dict).

    Args:
        obj: A decoded JSON value.
        what: Human-readable name used in the error, e.g. "ARM template".

    Raises:
        ParseError: If `obj` is not a mapping with string keys.
    """
    if not isinstance(obj, dict):
        raise ParseError(f"{what} must be a JSON object, got {type(obj).__name__}.")
    try:
        return _JSON_OBJECT.validate_python(obj, strict=True)
    except ValidationError as e:
        raise ParseError(f"{what} is not a valid JSON object: {e}") from e
