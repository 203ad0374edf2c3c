"""Tests for felt parsing, address normalization and selectors."""

from __future__ import annotations

import pytest

from felt import FIELD_PRIME, normalize_address, parse_felt, selector_from_name, to_hex, u256_from_felts


class TestParseFelt:
    def test_accepts_int_hex_and_decimal(self) -> None:
        assert parse_felt(255) == 255
        assert parse_felt("0xff") == 255
        assert parse_felt("0XFF") == 255
        assert parse_felt(" 255 ") == 255

    @pytest.mark.parametrize("value", [True, None, "", "0xzz", "12ab", -1, FIELD_PRIME, 1.5])
    def test_rejects_invalid(self, value: object) -> None:
        with pytest.raises(ValueError):
            parse_felt(value)

    def test_largest_felt_is_accepted(self) -> None:
        assert parse_felt(hex(FIELD_PRIME - 1)) == FIELD_PRIME - 1


class TestAddresses:
    def test_normalize_pads_to_64_hex_digits(self) -> None:
        assert normalize_address("0xABC") == "0x" + "0" * 61 + "abc"
        assert normalize_address(0xABC) == normalize_address("0x0abc")
        assert len(to_hex(1)) == 66


class TestSelectors:
    def test_known_selectors(self) -> None:
        # Values published by starknet.py / the Starknet docs.
        assert selector_from_name("transfer") == 0x83AFD3F4CAEDC6EEBF44246FE54E38C95E3179A5EC9EA81740ECA5B482D12E
        assert selector_from_name("balanceOf") == 0x2E4263AFAD30923C891518314C3C95DBE830A16874E8ABC5777A9A20B54C76E

    def test_hex_is_taken_as_explicit_selector(self) -> None:
        assert selector_from_name("0x1234") == 0x1234

    def test_empty_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            selector_from_name("  ")


class TestU256:
    def test_combines_limbs(self) -> None:
        assert u256_from_felts(5, 0) == 5
        assert u256_from_felts(0, 1) == 2**128
        assert u256_from_felts(1, 2) == 1 + (2 << 128)

    def test_rejects_oversized_limb(self) -> None:
        with pytest.raises(ValueError):
            u256_from_felts(2**128, 0)
