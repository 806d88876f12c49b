"""Unit tests for the prize split."""

from __future__ import annotations

from decimal import Decimal

import pytest

from tapbattle.rooms.settlement import compute_split


class TestComputeSplit:
    """Pool = fee x participants; organizer rounded down; remainder to winner."""

    def test_private_room_five_percent(self):
        pool, winner, organizer = compute_split(Decimal("50"), 4, Decimal("0.05"))
        assert pool == Decimal("200.00")
        assert winner == Decimal("190.00")
        assert organizer == Decimal("10.00")

    def test_public_room_winner_takes_all(self):
        pool, winner, organizer = compute_split(Decimal("20"), 10, Decimal("0"))
        assert pool == Decimal("200.00")
        assert winner == pool
        assert organizer == Decimal("0.00")

    def test_rounding_remainder_goes_to_winner(self):
        """0.99 x 5% = 0.0495: organizer gets 0.04, winner 0.95."""
        pool, winner, organizer = compute_split(Decimal("0.33"), 3, Decimal("0.05"))
        assert pool == Decimal("0.99")
        assert organizer == Decimal("0.04")
        assert winner == Decimal("0.95")

    @pytest.mark.parametrize(
        ("fee", "count", "share"),
        [
            ("1.01", 7, "0.05"),
            ("13.37", 3, "0.07"),
            ("0.01", 2, "0.05"),
            ("99999.99", 30, "0.05"),
            ("2.50", 11, "0.333"),
        ],
    )
    def test_split_never_creates_or_destroys_value(self, fee, count, share):
        pool, winner, organizer = compute_split(Decimal(fee), count, Decimal(share))
        assert winner + organizer == pool
        assert pool == (Decimal(fee) * count).quantize(Decimal("0.01"))
        assert organizer >= 0
        assert winner >= organizer

    def test_amounts_have_two_places(self):
        pool, winner, organizer = compute_split(Decimal("7"), 3, Decimal("0.05"))
        for amount in (pool, winner, organizer):
            assert amount.as_tuple().exponent == -2
