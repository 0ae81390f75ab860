"""
PREIMAGE-SHA-256 crypto-conditions for XRPL escrows.

Binary DER encoding (draft-thomas-crypto-conditions-03):

    Condition:   A0 <len>
                     80 20 <sha256(preimage)>    fingerprint
                     81 <len> <cost>             cost = len(preimage)

    Fulfillment: A0 <len>
                     80 <len> <preimage>

The ledger stores the condition on EscrowCreate and checks the
fulfillment against it on EscrowFinish.
"""

import hashlib
import logging
from typing import Tuple

from ..core import InputValidationError, ProtocolViolation

log = logging.getLogger(__name__)


# Type tag for PREIMAGE-SHA-256 (context-specific, constructed, tag 0)
PREIMAGE_SHA256_TAG = 0xa0

# Field tags inside the sequence (context-specific, primitive)
FINGERPRINT_TAG = 0x80
COST_TAG = 0x81
PREIMAGE_TAG = 0x80

FINGERPRINT_SIZE = 32

# Ledger limit on fulfillment size
MAX_PREIMAGE_SIZE = 128


# =============================================================================
# DER primitives
# =============================================================================

def _der_length(n: int) -> bytes:
    """Definite-form DER length."""
    if n < 0x80:
        return bytes([n])
    body = n.to_bytes((n.bit_length() + 7) // 8, 'big')
    return bytes([0x80 | len(body)]) + body


def _der_integer(n: int) -> bytes:
    """Minimal two's complement encoding of a non-negative integer."""
    body = n.to_bytes(max(1, (n.bit_length() + 7) // 8), 'big')
    if body[0] & 0x80:
        body = b'\x00' + body
    return body


def _tlv(tag: int, value: bytes) -> bytes:
    return bytes([tag]) + _der_length(len(value)) + value


def _read_tlv(data: bytes, offset: int, tag: int) -> Tuple[bytes, int]:
    """Read one TLV with the expected tag. Returns (value, next_offset)."""
    if offset >= len(data) or data[offset] != tag:
        found = f"0x{data[offset]:02x}" if offset < len(data) else "end of data"
        raise InputValidationError(
            f"Expected tag 0x{tag:02x} at offset {offset}, got {found}",
            side="XRP", check="condition-encoding",
        )
    offset += 1
    if offset >= len(data):
        raise InputValidationError("Truncated DER length", side="XRP", check="condition-encoding")

    first = data[offset]
    offset += 1
    if first < 0x80:
        length = first
    else:
        n = first & 0x7f
        if n == 0 or offset + n > len(data):
            raise InputValidationError("Bad DER length", side="XRP", check="condition-encoding")
        length = int.from_bytes(data[offset:offset + n], 'big')
        offset += n

    end = offset + length
    if end > len(data):
        raise InputValidationError("Truncated DER value", side="XRP", check="condition-encoding")
    return data[offset:end], end


def _to_bytes(value) -> bytes:
    if isinstance(value, str):
        try:
            return bytes.fromhex(value)
        except ValueError:
            raise InputValidationError(
                f"Not a hex string: {value[:16]}...", side="XRP", check="condition-encoding"
            )
    return bytes(value)


# =============================================================================
# Encode
# =============================================================================

def condition_binary(preimage: bytes) -> bytes:
    """Build the PREIMAGE-SHA-256 condition for a preimage."""
    if len(preimage) > MAX_PREIMAGE_SIZE:
        raise InputValidationError(
            f"Preimage too long: {len(preimage)} bytes (max {MAX_PREIMAGE_SIZE})",
            side="XRP", check="preimage-length",
        )
    fingerprint = hashlib.sha256(preimage).digest()
    body = _tlv(FINGERPRINT_TAG, fingerprint) + _tlv(COST_TAG, _der_integer(len(preimage)))
    return _tlv(PREIMAGE_SHA256_TAG, body)


def fulfillment_binary(preimage: bytes) -> bytes:
    """Build the PREIMAGE-SHA-256 fulfillment carrying a preimage."""
    if len(preimage) > MAX_PREIMAGE_SIZE:
        raise InputValidationError(
            f"Preimage too long: {len(preimage)} bytes (max {MAX_PREIMAGE_SIZE})",
            side="XRP", check="preimage-length",
        )
    return _tlv(PREIMAGE_SHA256_TAG, _tlv(PREIMAGE_TAG, preimage))


def condition_from_hash(secret_hash: str, preimage_size: int = 32) -> str:
    """
    Condition for a known SHA256 hashlock, without the preimage.

    Lets a responder derive the escrow condition from the hash it saw
    in the counterparty's script.
    """
    fingerprint = bytes.fromhex(secret_hash)
    if len(fingerprint) != FINGERPRINT_SIZE:
        raise InputValidationError(
            f"Hashlock must be {FINGERPRINT_SIZE} bytes", side="XRP", check="hashlock-length"
        )
    body = _tlv(FINGERPRINT_TAG, fingerprint) + _tlv(COST_TAG, _der_integer(preimage_size))
    return _tlv(PREIMAGE_SHA256_TAG, body).hex().upper()


# =============================================================================
# Decode
# =============================================================================

def parse_condition(condition) -> Tuple[bytes, int]:
    """
    Decode a condition.

    Args:
        condition: Binary condition or its hex form

    Returns:
        (fingerprint, cost)
    """
    data = _to_bytes(condition)
    body, end = _read_tlv(data, 0, PREIMAGE_SHA256_TAG)
    if end != len(data):
        raise InputValidationError(
            "Trailing bytes after condition", side="XRP", check="condition-encoding"
        )

    fingerprint, offset = _read_tlv(body, 0, FINGERPRINT_TAG)
    cost_bytes, offset = _read_tlv(body, offset, COST_TAG)
    if offset != len(body):
        raise InputValidationError(
            "Unexpected fields in condition", side="XRP", check="condition-encoding"
        )
    if len(fingerprint) != FINGERPRINT_SIZE:
        raise InputValidationError(
            f"Fingerprint must be {FINGERPRINT_SIZE} bytes", side="XRP", check="condition-encoding"
        )
    if not cost_bytes:
        raise InputValidationError("Empty cost", side="XRP", check="condition-encoding")

    return fingerprint, int.from_bytes(cost_bytes, 'big')


def parse_fulfillment(fulfillment) -> bytes:
    """Decode a fulfillment and return the preimage it carries."""
    data = _to_bytes(fulfillment)
    body, end = _read_tlv(data, 0, PREIMAGE_SHA256_TAG)
    if end != len(data):
        raise InputValidationError(
            "Trailing bytes after fulfillment", side="XRP", check="fulfillment-encoding"
        )
    preimage, offset = _read_tlv(body, 0, PREIMAGE_TAG)
    if offset != len(body):
        raise InputValidationError(
            "Unexpected fields in fulfillment", side="XRP", check="fulfillment-encoding"
        )
    return preimage


def validate_fulfillment(fulfillment, condition) -> bytes:
    """
    Check a fulfillment against a condition the way the ledger does.

    Returns:
        The preimage

    Raises:
        ProtocolViolation: if the fulfillment does not satisfy the condition
    """
    preimage = parse_fulfillment(fulfillment)
    fingerprint, cost = parse_condition(condition)

    if hashlib.sha256(preimage).digest() != fingerprint:
        raise ProtocolViolation(
            "Fulfillment does not match condition fingerprint",
            side="XRP", check="fulfillment-fingerprint",
        )
    if len(preimage) != cost:
        raise ProtocolViolation(
            f"Fulfillment cost {len(preimage)} != condition cost {cost}",
            side="XRP", check="fulfillment-cost",
        )
    return preimage
