"""Invoice number generation in the studio's ``INV DDMMYY-XX`` format."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Iterable, Optional, Union

INVOICE_RE = re.compile(r"^INV (?P<day>\d{2})(?P<month>\d{2})(?P<year>\d{2})-(?P<seq>\d+)$")


def invoice_prefix(day: Union[date, datetime]) -> str:
    """Return the date prefix shared by all invoice numbers issued on ``day``."""

    return f"INV {day.day:02d}{day.month:02d}{day.year % 100:02d}-"


def format_invoice_number(day: Union[date, datetime], sequence: int) -> str:
    """Format an invoice number, e.g. ``INV 090126-01``."""

    return f"{invoice_prefix(day)}{sequence:02d}"


def parse_sequence(invoice_number: Optional[str], day: Union[date, datetime]) -> int:
    """Return the sequence part if ``invoice_number`` was issued on ``day``, else 0."""

    if not invoice_number or not invoice_number.startswith(invoice_prefix(day)):
        return 0
    match = INVOICE_RE.match(invoice_number)
    if not match:
        return 0
    return int(match.group("seq"))


def next_invoice_number(existing: Iterable[Optional[str]], day: Union[date, datetime]) -> str:
    """Compute the next invoice number for ``day`` given already issued numbers.

    Numbers from other days and malformed values are ignored.
    """

    highest = max((parse_sequence(n, day) for n in existing), default=0)
    return format_invoice_number(day, highest + 1)
