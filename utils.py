import re
from decimal import Decimal
from typing import Optional


_EVM_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_evm_address(address: str) -> bool:
    """EVM: 0x + 40 hex chars"""
    return bool(_EVM_ADDRESS.match(address.strip()))


def normalize_address(address: str) -> str:
    return address.strip().lower()


def hex_to_int(value: Optional[str]) -> int:
    """Parse a 0x-prefixed quantity. Empty / "0x" means zero."""
    if not value or value in ("0x", "0x0"):
        return 0
    return int(value, 16)


def format_units(raw: int, decimals: int) -> Decimal:
    """Scale a raw integer amount down by 10**decimals."""
    if decimals <= 0:
        return Decimal(raw)
    return Decimal(raw).scaleb(-decimals)


def wei_to_ether(wei: int | str) -> Decimal:
    return format_units(int(wei), 18)


def decimal_to_str(value: Decimal) -> str:
    """Plain (non-exponent) string, trailing zeros stripped: 2.000 -> 2"""
    if value == 0:
        return "0"
    text = format(value.normalize(), "f")
    return text


def short_address(address: str, chars: int = 6) -> str:
    """Truncate: 0x1234...abcd"""
    if len(address) <= chars * 2 + 3:
        return address
    return f"{address[:chars]}...{address[-chars:]}"
