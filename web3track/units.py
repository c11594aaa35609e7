"""Conversion of whole amounts into the chain's base unit."""

_MAX_UINT64 = 2**64 - 1


def _scale(value: int, decimals: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected an integer amount, got {type(value).__name__}")
    if not 0 <= value <= _MAX_UINT64:
        raise ValueError(f"amount {value} is outside the unsigned 64-bit range")
    return value * 10**decimals


def ether(value: int) -> int:
    """Convert an amount of ether (18 decimals) into wei."""
    return _scale(value, 18)


def gwei(value: int) -> int:
    """Convert an amount of gwei (9 decimals) into wei."""
    return _scale(value, 9)