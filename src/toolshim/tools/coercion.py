"""Coerce the raw text of a leaf parameter into the type its schema declares."""

import json
import math
from typing import Any


def _to_number(value: str) -> Any:
    # int()/float() also take digit separators and inf/nan, which are not numeric literals here
    if "_" in value:
        return value
    try:
        return int(value)
    except ValueError:
        pass
    try:
        number = float(value)
    except ValueError:
        return value
    return number if math.isfinite(number) else value


def convert_value(value: str, type_name: str | None) -> Any:
    """
    Convert *value* to the scalar type named by *type_name*.

    Never raises: text that does not fit the declared type is returned unchanged.

    ``number``/``integer``
        ``int`` for integer literals, ``float`` for any other finite literal.  Digit
        separators and ``inf``/``nan`` are not accepted.
    ``boolean``
        ``True``/``False`` for a case-insensitive ``true``/``false``.
    ``array``/``object``
        The ``json.loads`` result.
    anything else
        The text itself.
    """
    if type_name in ("array", "object"):
        try:
            return json.loads(value)
        except (ValueError, RecursionError):
            return value
    if type_name in ("number", "integer"):
        return _to_number(value)
    if type_name == "boolean":
        lowered = value.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        return value
    return value
