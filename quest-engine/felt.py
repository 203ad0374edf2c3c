"""Starknet field-element helpers: parsing, hex formatting, selectors, u256."""

from __future__ import annotations

from Crypto.Hash import keccak

FIELD_PRIME = 2**251 + 17 * 2**192 + 1
_MASK_250 = 2**250 - 1


def parse_felt(value: object) -> int:
    """Parse a felt from an int, a 0x-prefixed hex string or a decimal string."""
    if isinstance(value, bool):
        raise ValueError("felt must not be a boolean")
    if isinstance(value, int):
        felt = value
    elif isinstance(value, str) and value.strip():
        text = value.strip().lower()
        try:
            felt = int(text, 16) if text.startswith("0x") else int(text, 10)
        except ValueError:
            raise ValueError(f"invalid felt: {value!r}") from None
    else:
        raise ValueError(f"invalid felt: {value!r}")
    if felt < 0 or felt >= FIELD_PRIME:
        raise ValueError(f"felt out of range: {value!r}")
    return felt


def to_hex(value: int) -> str:
    """Zero-padded 64-digit hex, the canonical address form."""
    return f"0x{value:064x}"


def to_hex_trimmed(value: int) -> str:
    return f"0x{value:x}"


def normalize_address(value: object) -> str:
    return to_hex(parse_felt(value))


def _starknet_keccak(data: bytes) -> int:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return int.from_bytes(k.digest(), "big") & _MASK_250


def selector_from_name(name: str) -> int:
    """Entry point or event selector; hex input is taken as an explicit selector."""
    text = name.strip()
    if not text:
        raise ValueError("selector name is empty")
    if text.lower().startswith("0x"):
        return parse_felt(text)
    return _starknet_keccak(text.encode("ascii"))


def u256_from_felts(low: int, high: int) -> int:
    if low >= 2**128 or high >= 2**128:
        raise ValueError("u256 limbs must fit in 128 bits")
    return low + (high << 128)
