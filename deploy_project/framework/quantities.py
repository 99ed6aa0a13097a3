"""Resource quantity parsing (Kubernetes-style `250m`, `0.5`, `128Mi`, `1G`, `1e3`)."""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

_BINARY_SUFFIXES: dict[str, int] = {
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}

_DECIMAL_SUFFIXES: dict[str, Decimal] = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}

_QUANTITY_RE = re.compile(
    r"^(?P<number>[+]?(?:\d+(?:\.\d*)?|\.\d+))"
    r"(?:(?P<binary>Ki|Mi|Gi|Ti|Pi|Ei)|(?P<exponent>[eE][+-]?\d+)|(?P<decimal>[numkMGTPE]?))$"
)


def parse_quantity(value: str | int | float) -> Decimal:
    """Return the quantity in base units (cores for CPU, bytes for memory).

    Raises ValueError for anything that is not a well-formed quantity.
    """

    if isinstance(value, bool):
        raise ValueError(f"Invalid quantity: {value!r}")
    if isinstance(value, (int, float)):
        text = repr(value) if isinstance(value, float) else str(value)
    elif isinstance(value, str):
        text = value.strip()
    else:
        raise ValueError(f"Invalid quantity: {value!r}")

    match = _QUANTITY_RE.match(text)
    if match is None:
        raise ValueError(f"Invalid quantity: {value!r}")

    try:
        number = Decimal(match.group("number"))
    except InvalidOperation as exc:  # pragma: no cover
        raise ValueError(f"Invalid quantity: {value!r}") from exc

    if match.group("binary"):
        return number * _BINARY_SUFFIXES[match.group("binary")]
    if match.group("exponent"):
        return number * (Decimal(10) ** int(match.group("exponent")[1:]))
    return number * _DECIMAL_SUFFIXES[match.group("decimal") or ""]

