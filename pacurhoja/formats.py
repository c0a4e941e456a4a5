"""Display formatting for numeric formula results.

Percentages are stored as fractions: 0.5 renders as "50%".
"""

import math
from typing import Optional

from pacurhoja.models import FormatTag


def _fixed(value: float, grouping: bool = False) -> str:
    """Two-decimal text without a '-0.00' artefact."""
    text = f"{value:,.2f}" if grouping else f"{value:.2f}"
    if text.lstrip('-').replace(',', '') == "0.00":
        return "0.00"
    return text


def _trim(text: str) -> str:
    if '.' in text:
        text = text.rstrip('0').rstrip('.')
    return text


def format_number(value: float, tag: Optional[FormatTag] = None) -> str:
    """Render a finite number for the grid according to its format tag."""
    if tag is None or tag == FormatTag.GENERAL:
        return _trim(_fixed(value))
    if tag == FormatTag.CURRENCY:
        text = _fixed(value, grouping=True)
        if text.startswith('-'):
            return f"-${text[1:]}"
        return f"${text}"
    if tag == FormatTag.PERCENTAGE:
        scaled = value * 100
        if not math.isfinite(scaled):
            raise OverflowError(f"{value!r} overflows as a percentage")
        return _trim(_fixed(scaled)) + "%"
    if tag == FormatTag.THOUSANDS:
        return _trim(_fixed(value, grouping=True))
    raise ValueError(f"Unknown format: {tag!r}")
