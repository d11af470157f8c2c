from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Iterator, List, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how SQLite DateTime columns round-trip."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    batch: List[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
