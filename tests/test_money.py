"""Tests for amount conversion and keypair storage."""

import json
from decimal import Decimal

import pytest
from solders.keypair import Keypair

from tributary.money import format_amount, from_base_units, to_base_units
from tributary.storage import read_keypair, write_keypair


class TestAmounts:
    def test_to_base_units_rounds_down(self):
        assert to_base_units("1.5") == 1_500_000
        assert to_base_units("0.0000019") == 1
        assert to_base_units(2, decimals=0) == 2

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            to_base_units("-1")

    def test_from_base_units(self):
        assert from_base_units(100) == Decimal("0.000100")

    def test_format(self):
        assert format_amount(100) == "0.0001 USDC (100 base units)"
        assert format_amount(3_000_000, "EURC") == "3 EURC (3000000 base units)"


class TestKeypairFiles:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "wallet" / "id.json"
        keypair = Keypair()
        write_keypair(path, keypair)
        assert read_keypair(path).pubkey() == keypair.pubkey()

    def test_refuses_overwrite(self, tmp_path):
        path = tmp_path / "id.json"
        write_keypair(path, Keypair())
        with pytest.raises(FileExistsError):
            write_keypair(path, Keypair())

    def test_rejects_wrong_shape(self, tmp_path):
        path = tmp_path / "id.json"
        path.write_text(json.dumps([1, 2, 3]))
        with pytest.raises(ValueError, match="64-byte array"):
            read_keypair(path)
        path.write_text("{")
        with pytest.raises(ValueError, match="not valid JSON"):
            read_keypair(path)
