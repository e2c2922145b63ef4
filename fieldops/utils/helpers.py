"""Shared request-value coercion.

parse_bool:  JSON flags that may arrive as booleans, 0/1 or strings
"""

from fieldops.core.exceptions import ValidationError

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


def parse_bool(value, field: str, *, default: bool) -> bool:
    """Strict boolean coercion.

    ``None`` / ``""`` give ``default``; ``"false"``, ``"0"``, ``"no"`` and
    ``"off"`` (any case) are False. Anything that is not a recognisable
    flag raises instead of silently becoming truthy.

    Raises:
        ValidationError: for values such as ``"maybe"``, ``2`` or a list.
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in _TRUE:
            return True
        if raw in _FALSE:
            return False
    raise ValidationError(f"{field} must be a boolean", details={field: "invalid"})
