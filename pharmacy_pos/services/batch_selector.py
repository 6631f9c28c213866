"""Batch selection for auto-add and the batch picker."""
from datetime import date
from typing import Iterable, Optional

from pharmacy_pos.exceptions import ValidationError
from pharmacy_pos.models import Batch


def _sort_key(batch: Batch):
    # most stock first, then earliest expiry, no expiry last
    return (-batch.available_qty, batch.expiry is None, batch.expiry or date.max)


def choose_best_batch(batches: Iterable[Batch], today: Optional[date] = None) -> Optional[Batch]:
    """
    Pick the batch to sell from.

    Expired batches (expiry before `today`) are discarded; batches without
    expiry are always eligible. The rest are ordered by available quantity
    descending, ties broken by earliest expiry.

    Returns:
        The best Batch, or None when nothing is eligible.
    """
    today = today or date.today()
    eligible = [b for b in batches if not b.is_expired(today)]
    if not eligible:
        return None
    return sorted(eligible, key=_sort_key)[0]


def validate_batch_quantity(qty: int, batch: Optional[Batch]) -> None:
    """Check a quantity chosen in the batch picker against the batch stock."""
    if batch is None:
        raise ValidationError('No batch selected')
    if qty < 1:
        raise ValidationError('Quantity must be at least 1')
    if batch.available_qty <= 0:
        raise ValidationError(f'Batch {batch.batch_number or batch.id} is out of stock')
    if qty > batch.available_qty:
        raise ValidationError(f'Only {batch.available_qty} available in this batch')
