"""Bitcoin mainnet on-chain address format check.

Accepts the three standard shapes used for grant disbursement:

- P2PKH (``1...``) and P2SH (``3...``) by Base58 alphabet and length;
- segwit / taproot (``bc1...``) with a verified Bech32 or Bech32m checksum
  (BIP-173 / BIP-350).

Lightning invoices, LNURL and testnet addresses are rejected.
"""

import re
from typing import Optional

BASE58_RE = re.compile(r"^[13][a-km-zA-HJ-NP-Z1-9]{25,34}$")

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_INDEX = {ch: i for i, ch in enumerate(BECH32_CHARSET)}
_BECH32_GENERATORS = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3


def _polymod(values: list[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ value
        for i, generator in enumerate(_BECH32_GENERATORS):
            if (top >> i) & 1:
                chk ^= generator
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _bech32_decode(address: str) -> Optional[tuple[str, str, list[int]]]:
    """Return ``(hrp, encoding, data-without-checksum)`` or ``None``."""
    # Bech32 is case-insensitive but must not mix cases.
    if address.lower() != address and address.upper() != address:
        return None
    s = address.lower()
    if len(s) < 8 or len(s) > 90:
        return None
    pos = s.rfind("1")
    if pos < 1 or pos + 7 > len(s):
        return None

    hrp, data_part = s[:pos], s[pos + 1 :]
    data = []
    for ch in data_part:
        if ch not in _BECH32_INDEX:
            return None
        data.append(_BECH32_INDEX[ch])

    checksum = _polymod(_hrp_expand(hrp) + data)
    if checksum == BECH32_CONST:
        encoding = "bech32"
    elif checksum == BECH32M_CONST:
        encoding = "bech32m"
    else:
        return None
    return hrp, encoding, data[:-6]


def _convert_bits(data: list[int], from_bits: int, to_bits: int) -> Optional[list[int]]:
    acc = 0
    bits = 0
    out = []
    maxv = (1 << to_bits) - 1
    for value in data:
        if value < 0 or value >> from_bits:
            return None
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & maxv)
    if bits >= from_bits or ((acc << (to_bits - bits)) & maxv):
        return None
    return out


def _is_valid_segwit(address: str) -> bool:
    decoded = _bech32_decode(address)
    if decoded is None:
        return False
    hrp, encoding, data = decoded
    if hrp != "bc" or not data:
        return False

    version = data[0]
    if version > 16:
        return False
    program = _convert_bits(data[1:], 5, 8)
    if program is None or not 2 <= len(program) <= 40:
        return False

    if version == 0:
        return encoding == "bech32" and len(program) in (20, 32)
    return encoding == "bech32m"


def is_valid_bitcoin_address(value: str) -> bool:
    """Pure predicate: ``True`` for a well-formed mainnet on-chain address."""
    address = (value or "").strip()
    if not address:
        return False
    if address[:3].lower() == "bc1":
        return _is_valid_segwit(address)
    return bool(BASE58_RE.match(address))
