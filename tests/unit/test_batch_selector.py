"""
Unit tests for batch selection.
"""

from datetime import date

import pytest

from pharmacy_pos.exceptions import ValidationError
from pharmacy_pos.models import Batch
from pharmacy_pos.services.batch_selector import choose_best_batch, validate_batch_quantity

TODAY = date(2025, 6, 1)


class TestChooseBestBatch:
    """Tests for choose_best_batch."""

    def test_prefers_most_stock(self):
        """Test that the batch with the highest available quantity wins."""
        batches = [
            Batch('A', 'L-A', date(2026, 1, 1), 5),
            Batch('B', 'L-B', date(2027, 1, 1), 12),
        ]
        assert choose_best_batch(batches, today=TODAY).id == 'B'

    def test_tie_broken_by_earliest_expiry(self):
        """Test equal stock picks the batch expiring first."""
        batches = [
            Batch('A', 'L-A', date(2025, 12, 1), 10),
            Batch('B', 'L-B', date(2025, 8, 1), 10),
        ]
        assert choose_best_batch(batches, today=TODAY).id == 'B'

    def test_expired_batches_discarded(self):
        """Test expired batches are never chosen, even with more stock."""
        batches = [
            Batch('OLD', 'L-O', date(2025, 5, 31), 100),
            Batch('NEW', 'L-N', date(2025, 12, 1), 1),
        ]
        assert choose_best_batch(batches, today=TODAY).id == 'NEW'

    def test_batch_expiring_today_is_eligible(self):
        batches = [Batch('A', 'L-A', TODAY, 3)]
        assert choose_best_batch(batches, today=TODAY).id == 'A'

    def test_no_expiry_is_eligible_and_sorts_last_on_ties(self):
        """Test batches without expiry are kept but lose a stock tie."""
        batches = [
            Batch('NOEXP', 'L-X', None, 10),
            Batch('DATED', 'L-D', date(2030, 1, 1), 10),
        ]
        assert choose_best_batch(batches, today=TODAY).id == 'DATED'
        assert choose_best_batch([Batch('NOEXP', 'L-X', None, 1)], today=TODAY).id == 'NOEXP'

    def test_only_expired_returns_none(self):
        batches = [Batch('A', 'L-A', date(2020, 1, 1), 10)]
        assert choose_best_batch(batches, today=TODAY) is None

    def test_empty_returns_none(self):
        assert choose_best_batch([], today=TODAY) is None

    def test_deterministic(self):
        """Test the same input and day always give the same batch."""
        batches = [
            Batch('A', 'L-A', date(2026, 1, 1), 7),
            Batch('B', 'L-B', date(2026, 1, 1), 7),
            Batch('C', 'L-C', None, 7),
        ]
        picks = {choose_best_batch(list(batches), today=TODAY).id for _ in range(5)}
        assert picks == {'A'}


class TestValidateBatchQuantity:
    """Tests for the batch picker quantity check."""

    def test_valid_quantity(self):
        validate_batch_quantity(3, Batch('A', 'L-A', None, 3))

    @pytest.mark.parametrize('qty,batch,message', [
        (1, None, 'No batch selected'),
        (0, Batch('A', 'L-A', None, 5), 'at least 1'),
        (1, Batch('A', 'L-A', None, 0), 'out of stock'),
        (6, Batch('A', 'L-A', None, 5), 'Only 5 available'),
    ])
    def test_invalid(self, qty, batch, message):
        with pytest.raises(ValidationError) as exc:
            validate_batch_quantity(qty, batch)
        assert message in exc.value.message
