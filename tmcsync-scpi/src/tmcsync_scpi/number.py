"""SCPI numeric response parsing.

Handles the NR1 (integer) responses returned by the IEEE 488.2 register
queries and splits compound response messages.
"""

from __future__ import annotations


def parse_int(text: str) -> int:
    """Parse a SCPI NR1 (integer) response.

    Some instruments answer register queries in NR2 form (``"32.0"``);
    integral NR2 values are accepted.

    Args:
        text: The raw response string.

    Returns:
        The parsed integer.

    Raises:
        ValueError: If *text* is not a valid integer.
    """
    token = text.strip()
    try:
        return int(token)
    except ValueError:
        pass
    try:
        value = float(token)
    except ValueError:
        raise ValueError(f"Invalid SCPI integer: {text!r}") from None
    if not value.is_integer():
        raise ValueError(f"Invalid SCPI integer: {text!r}")
    return int(value)


def split_response(text: str) -> tuple[str, ...]:
    """Split a compound response message into its unit responses.

    Responses to ``A?;B?`` arrive as one message with the unit responses
    separated by ``;``.
    """
    return tuple(part.strip() for part in text.strip().split(";"))
