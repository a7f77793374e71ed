from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal


def rupiah(value: Decimal | float | int) -> str:
    amount = Decimal(value).quantize(Decimal("0.01"))
    whole, _, cents = f"{amount:,.2f}".partition(".")
    return f"Rp{whole.replace(',', '.')},{cents}"


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
