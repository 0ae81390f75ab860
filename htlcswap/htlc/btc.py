"""
Bitcoin HTLC implementation for htlcswap.

Creates P2SH HTLCs with a relative (BIP-68/BIP-112) timelock.

HTLC Script Structure:
    OP_IF
        OP_SHA256 <hashlock> OP_EQUALVERIFY
        OP_DUP OP_HASH160 <hash160(claim_pubkey)> OP_EQUALVERIFY OP_CHECKSIG
    OP_ELSE
        <sequence> OP_CHECKSEQUENCEVERIFY OP_DROP
        OP_DUP OP_HASH160 <hash160(refund_pubkey)> OP_EQUALVERIFY OP_CHECKSIG
    OP_ENDIF

To claim (with preimage):
    <signature> <claim_pubkey> <preimage> OP_TRUE <redeemScript>

To refund (after the relative timeout):
    <signature> <refund_pubkey> OP_FALSE <redeemScript>
"""

import hashlib
import struct
import logging
from typing import Optional, Dict, Tuple, Union, Any

import base58
import bech32
from ecdsa import SigningKey, SECP256k1
from ecdsa.util import sigencode_der_canonize

from bitcoin.core import (
    CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint,
    CTransaction, lx, b2x, b2lx,
)
from bitcoin.core.script import (
    CScript, CScriptOp, CScriptInvalidError, SignatureHash, SIGHASH_ALL,
)
from bitcoin.core.serialize import Hash160, SerializationError

from ..core import (
    KeyInfo, UTXO, DEFAULT_BTC_FEE_SATS, SECRET_SIZE, sha256,
    InputValidationError, InsufficientFundsError, ExtractionError, ProtocolViolation,
)
from ..chains.btc import BTCClient

log = logging.getLogger(__name__)


# Bitcoin Script opcodes
OP_0 = 0x00
OP_FALSE = 0x00
OP_TRUE = 0x51
OP_1 = 0x51
OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_DROP = 0x75
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_SHA256 = 0xa8
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKSEQUENCEVERIFY = 0xb2

# Claim inputs opt out of relative timelocks
SEQUENCE_FINAL = 0xffffffff

# BIP-68 sequence fields
SEQUENCE_DISABLE_FLAG = 1 << 31
SEQUENCE_TYPE_FLAG = 1 << 22        # Set = time-based, 512-second units
SEQUENCE_GRANULARITY = 9
SEQUENCE_MASK = 0x0000ffff

MAX_SCRIPT_ELEMENT_SIZE = 520       # P2SH redeem scripts are pushed as one element

# Version bytes and bech32 prefixes per network
NETWORKS = {
    "mainnet": {"p2pkh": 0x00, "p2sh": 0x05, "wif": 0x80, "hrp": "bc"},
    "testnet": {"p2pkh": 0x6f, "p2sh": 0xc4, "wif": 0xef, "hrp": "tb"},
    "signet": {"p2pkh": 0x6f, "p2sh": 0xc4, "wif": 0xef, "hrp": "tb"},
    "regtest": {"p2pkh": 0x6f, "p2sh": 0xc4, "wif": 0xef, "hrp": "bcrt"},
}


def push_data(data: bytes) -> bytes:
    """Create push data opcode for Bitcoin script."""
    length = len(data)
    if length < 0x4c:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([0x4c, length]) + data
    elif length <= 0xffff:
        return bytes([0x4d]) + struct.pack('<H', length) + data
    else:
        return bytes([0x4e]) + struct.pack('<I', length) + data


def push_int(n: int) -> bytes:
    """Push a non-negative integer as a minimal CScriptNum."""
    if n == 0:
        return bytes([OP_0])
    elif 1 <= n <= 16:
        return bytes([0x50 + n])  # OP_1 through OP_16
    result = []
    while n:
        result.append(n & 0xff)
        n >>= 8
    # Keep the sign bit clear
    if result[-1] & 0x80:
        result.append(0x00)
    return push_data(bytes(result))


def _script_num(element: Union[int, bytes]) -> int:
    """Decode a CScriptNum as yielded by CScript iteration."""
    if isinstance(element, int):
        return element
    if not element:
        return 0
    value = int.from_bytes(element, 'little')
    if element[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(element) - 1))))
    return value


def hash160(data: bytes) -> bytes:
    """HASH160 = RIPEMD160(SHA256(data))."""
    return Hash160(data)


def _as_bytes(value: Union[str, bytes], name: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    try:
        return bytes.fromhex(value)
    except (ValueError, TypeError):
        raise InputValidationError(f"{name} is not valid hex", side="BTC", check=f"{name}-encoding")


# =============================================================================
# Relative timelocks (BIP-68)
# =============================================================================

def encode_sequence(blocks: Optional[int] = None, seconds: Optional[int] = None) -> int:
    """
    Encode a relative timelock as an nSequence value.

    Exactly one of `blocks` or `seconds` must be given. Seconds must be
    a multiple of 512, the granularity of time-based locks.
    """
    if (blocks is None) == (seconds is None):
        raise InputValidationError(
            "Give exactly one of blocks or seconds", side="BTC", check="sequence-kind"
        )
    if blocks is not None:
        if not 1 <= blocks <= SEQUENCE_MASK:
            raise InputValidationError(
                f"Relative lock of {blocks} blocks out of range 1..{SEQUENCE_MASK}",
                side="BTC", check="sequence-overflow",
            )
        return blocks

    units = seconds >> SEQUENCE_GRANULARITY
    if seconds <= 0 or seconds % 512 or units > SEQUENCE_MASK:
        raise InputValidationError(
            f"Relative lock of {seconds}s must be a positive multiple of 512 "
            f"up to {SEQUENCE_MASK * 512}",
            side="BTC", check="sequence-overflow",
        )
    return SEQUENCE_TYPE_FLAG | units


def decode_sequence(sequence: int) -> Tuple[str, int]:
    """
    Decode an nSequence relative timelock.

    Returns:
        ("blocks", n) or ("seconds", n)
    """
    if sequence < 0 or sequence & SEQUENCE_DISABLE_FLAG:
        raise InputValidationError(
            f"Sequence 0x{sequence:08x} disables the relative timelock",
            side="BTC", check="sequence-disabled",
        )
    if sequence & ~(SEQUENCE_TYPE_FLAG | SEQUENCE_MASK):
        raise InputValidationError(
            f"Sequence 0x{sequence:08x} has non-canonical bits set",
            side="BTC", check="sequence-encoding",
        )
    value = sequence & SEQUENCE_MASK
    if value == 0:
        raise InputValidationError("Zero relative timelock", side="BTC", check="sequence-zero")
    if sequence & SEQUENCE_TYPE_FLAG:
        return "seconds", value << SEQUENCE_GRANULARITY
    return "blocks", value


# =============================================================================
# Keys and addresses
# =============================================================================

def privkey_to_pubkey(privkey: bytes) -> bytes:
    """Compressed public key for a private key."""
    sk = SigningKey.from_string(privkey, curve=SECP256k1)
    return sk.get_verifying_key().to_string("compressed")


def sign_hash(privkey: bytes, sighash: bytes) -> bytes:
    """Deterministic (RFC 6979) low-S DER signature."""
    sk = SigningKey.from_string(privkey, curve=SECP256k1)
    return sk.sign_digest_deterministic(
        sighash, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
    )


def encode_wif(privkey: bytes, network: str = "regtest") -> str:
    """WIF for a compressed-key private key."""
    payload = bytes([NETWORKS[network]["wif"]]) + privkey + b'\x01'
    return base58.b58encode_check(payload).decode()


def decode_wif(wif: str, network: str = "regtest") -> bytes:
    """Decode a compressed-key WIF to private key bytes."""
    try:
        decoded = base58.b58decode_check(wif)
    except ValueError:
        raise InputValidationError("Bad WIF checksum", side="BTC", check="wif-encoding")

    if decoded[0] != NETWORKS[network]["wif"]:
        raise InputValidationError(
            f"WIF prefix 0x{decoded[0]:02x} is not for {network}", side="BTC", check="wif-network"
        )
    if len(decoded) != 34 or decoded[-1] != 0x01:
        raise InputValidationError(
            "Only compressed-key WIFs are supported", side="BTC", check="wif-encoding"
        )
    return decoded[1:33]


def address_to_script_pubkey(address: str, network: str = "regtest") -> bytes:
    """
    Output script for a destination address.

    Supports P2PKH, P2SH and segwit v0 (P2WPKH/P2WSH).
    """
    params = NETWORKS[network]
    hrp = params["hrp"]

    if address.lower().startswith(hrp + "1"):
        version, program = bech32.decode(hrp, address)
        if version is None:
            raise InputValidationError(
                f"Bad bech32 address: {address}", side="BTC", check="address-encoding"
            )
        if version != 0:
            raise InputValidationError(
                f"Unsupported witness version {version}", side="BTC", check="address-version"
            )
        return bytes([OP_0]) + push_data(bytes(program))

    try:
        decoded = base58.b58decode_check(address)
    except ValueError:
        raise InputValidationError(
            f"Bad base58 address: {address}", side="BTC", check="address-encoding"
        )
    if len(decoded) != 21:
        raise InputValidationError(
            f"Bad address payload length: {address}", side="BTC", check="address-encoding"
        )

    version, payload = decoded[0], decoded[1:]
    if version == params["p2pkh"]:
        return bytes([OP_DUP, OP_HASH160]) + push_data(payload) + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    if version == params["p2sh"]:
        return bytes([OP_HASH160]) + push_data(payload) + bytes([OP_EQUAL])
    raise InputValidationError(
        f"Address {address} is not for {network}", side="BTC", check="address-network"
    )


class BTCHtlc:
    """
    Bitcoin HTLC manager.

    Builders (script, address, claim, refund, extraction) are pure and
    never touch the node. Only funding and spend lookup use the client.
    """

    def __init__(self, client: Optional[BTCClient] = None, network: str = "regtest",
                 fee_sats: int = DEFAULT_BTC_FEE_SATS):
        if network not in NETWORKS:
            raise InputValidationError(f"Unknown network: {network}", side="BTC", check="network")
        self.client = client
        self.network = network
        self.fee_sats = fee_sats

    # =========================================================================
    # Keys
    # =========================================================================

    def create_key_pair(self, wif: Optional[str] = None) -> KeyInfo:
        """
        Create (or import) a P2PKH key pair on this network.

        Args:
            wif: Optional WIF to import instead of generating

        Returns:
            KeyInfo with address, compressed pubkey and private key
        """
        if wif:
            privkey = decode_wif(wif, self.network)
        else:
            privkey = SigningKey.generate(curve=SECP256k1).to_string()

        pubkey = privkey_to_pubkey(privkey)
        return KeyInfo(
            address=self.pubkey_to_address(pubkey),
            pubkey=pubkey,
            privkey=privkey,
            chain="BTC",
        )

    def pubkey_to_address(self, pubkey: bytes) -> str:
        """P2PKH address for a public key."""
        payload = bytes([NETWORKS[self.network]["p2pkh"]]) + hash160(pubkey)
        return base58.b58encode_check(payload).decode()

    def export_wif(self, key: KeyInfo) -> str:
        return encode_wif(key.privkey, self.network)

    # =========================================================================
    # Script
    # =========================================================================

    def create_htlc_script(self, secret_hash: str, claim_pubkey: Union[str, bytes],
                           refund_pubkey: Union[str, bytes], sequence: int) -> bytes:
        """
        Create HTLC redeem script.

        Args:
            secret_hash: SHA256 hashlock (hex)
            claim_pubkey: Compressed pubkey allowed to claim with the preimage
            refund_pubkey: Compressed pubkey allowed to refund after the timeout
            sequence: BIP-68 relative timelock (see encode_sequence)

        Returns:
            Redeem script bytes
        """
        hashlock = _as_bytes(secret_hash, "hashlock")
        claim_bytes = _as_bytes(claim_pubkey, "claim-pubkey")
        refund_bytes = _as_bytes(refund_pubkey, "refund-pubkey")

        if len(hashlock) != 32:
            raise InputValidationError(
                f"Hashlock must be 32 bytes, got {len(hashlock)}", side="BTC", check="hashlock-length"
            )
        for name, pub in (("claim-pubkey", claim_bytes), ("refund-pubkey", refund_bytes)):
            if len(pub) != 33 or pub[0] not in (0x02, 0x03):
                raise InputValidationError(
                    f"{name} must be a 33-byte compressed key", side="BTC", check=f"{name}-length"
                )
        if claim_bytes == refund_bytes:
            raise InputValidationError(
                "Claim and refund keys must differ", side="BTC", check="distinct-keys"
            )
        decode_sequence(sequence)

        return self._assemble(hashlock, hash160(claim_bytes), hash160(refund_bytes), sequence)

    @staticmethod
    def _assemble(hashlock: bytes, claim_pkh: bytes, refund_pkh: bytes, sequence: int) -> bytes:
        script = bytes([OP_IF])
        script += bytes([OP_SHA256])
        script += push_data(hashlock)
        script += bytes([OP_EQUALVERIFY])
        script += bytes([OP_DUP, OP_HASH160])
        script += push_data(claim_pkh)
        script += bytes([OP_EQUALVERIFY, OP_CHECKSIG])
        script += bytes([OP_ELSE])
        script += push_int(sequence)
        script += bytes([OP_CHECKSEQUENCEVERIFY, OP_DROP])
        script += bytes([OP_DUP, OP_HASH160])
        script += push_data(refund_pkh)
        script += bytes([OP_EQUALVERIFY, OP_CHECKSIG])
        script += bytes([OP_ENDIF])
        return script

    def parse_htlc_script(self, script: Union[str, bytes]) -> Dict[str, Any]:
        """
        Decode an HTLC redeem script back into its parameters.

        Raises ProtocolViolation if the script is not exactly the layout
        this module builds.

        Returns:
            Dict with secret_hash (hex), claim_pkh, refund_pkh (bytes)
            and sequence
        """
        script = _as_bytes(script, "redeem-script")
        try:
            elements = list(CScript(script))
        except CScriptInvalidError as e:
            raise ProtocolViolation(f"Redeem script does not decode: {e}",
                                    side="BTC", check="script-layout")

        if len(elements) != 19:
            raise ProtocolViolation(
                f"Redeem script has {len(elements)} elements, expected 19",
                side="BTC", check="script-layout",
            )

        hashlock, claim_pkh, seq_element, refund_pkh = elements[2], elements[6], elements[10], elements[15]
        if not all(isinstance(e, bytes) for e in (hashlock, claim_pkh, refund_pkh)):
            raise ProtocolViolation("Redeem script pushes are not data",
                                    side="BTC", check="script-layout")
        sequence = _script_num(seq_element)
        if sequence <= 0:
            raise ProtocolViolation("Relative timelock is not positive",
                                    side="BTC", check="script-layout")

        if self._assemble(hashlock, claim_pkh, refund_pkh, sequence) != script:
            raise ProtocolViolation("Redeem script is not a canonical HTLC",
                                    side="BTC", check="script-layout")

        return {
            "secret_hash": hashlock.hex(),
            "claim_pkh": claim_pkh,
            "refund_pkh": refund_pkh,
            "sequence": sequence,
        }

    def script_to_p2sh_address(self, script: bytes) -> str:
        """
        Convert redeem script to a P2SH address.

        Args:
            script: Redeem script bytes

        Returns:
            Base58check P2SH address
        """
        if len(script) > MAX_SCRIPT_ELEMENT_SIZE:
            raise InputValidationError(
                f"Redeem script is {len(script)} bytes (max {MAX_SCRIPT_ELEMENT_SIZE})",
                side="BTC", check="script-size",
            )
        payload = bytes([NETWORKS[self.network]["p2sh"]]) + hash160(script)
        return base58.b58encode_check(payload).decode()

    # =========================================================================
    # Spending transactions
    # =========================================================================

    def _unsigned_spend(self, destination: str, utxo: UTXO, sequence: int) -> CMutableTransaction:
        output_sats = utxo.amount - self.fee_sats
        if output_sats <= 0:
            raise InsufficientFundsError(
                f"Fee {self.fee_sats} sats >= locked amount {utxo.amount} sats",
                side="BTC", check="fee-exceeds-amount",
            )
        txin = CMutableTxIn(COutPoint(lx(utxo.txid), utxo.vout), nSequence=sequence)
        txout = CMutableTxOut(output_sats, CScript(address_to_script_pubkey(destination, self.network)))
        return CMutableTransaction([txin], [txout], nLockTime=0, nVersion=2)

    def _sign_input(self, tx: CMutableTransaction, redeem_script: bytes, privkey: bytes) -> bytes:
        sighash = SignatureHash(CScript(redeem_script), tx, 0, SIGHASH_ALL)
        return sign_hash(privkey, sighash) + bytes([SIGHASH_ALL])

    def build_claim_tx(self, destination: str, redeem_script: bytes, privkey: bytes,
                       utxo: UTXO, secret: bytes) -> str:
        """
        Build and sign a claim transaction (hash branch).

        Args:
            destination: Address receiving amount - fee
            redeem_script: HTLC redeem script
            privkey: Private key of the claim pubkey
            utxo: The locked output
            secret: 32-byte preimage

        Returns:
            Serialized transaction hex
        """
        params = self.parse_htlc_script(redeem_script)
        if len(secret) != SECRET_SIZE or sha256(secret).hex() != params["secret_hash"]:
            raise InputValidationError("Preimage does not match hashlock",
                                       side="BTC", check="secret-mismatch")
        pubkey = privkey_to_pubkey(privkey)
        if hash160(pubkey) != params["claim_pkh"]:
            raise InputValidationError("Signing key is not the claim key",
                                       side="BTC", check="claim-key-mismatch")

        tx = self._unsigned_spend(destination, utxo, SEQUENCE_FINAL)
        sig = self._sign_input(tx, redeem_script, privkey)
        tx.vin[0].scriptSig = CScript([sig, pubkey, secret, CScriptOp(OP_TRUE), redeem_script])

        log.info(f"HTLC claim built: {utxo.txid}:{utxo.vout} -> {destination}, "
                 f"{utxo.amount - self.fee_sats} sats")
        return b2x(tx.serialize())

    def build_refund_tx(self, destination: str, redeem_script: bytes, privkey: bytes,
                        utxo: UTXO, sequence: int) -> str:
        """
        Build and sign a refund transaction (timelock branch).

        The input's nSequence is the same relative timelock baked into
        the script, so the node rejects it until the lock has matured.

        Returns:
            Serialized transaction hex
        """
        params = self.parse_htlc_script(redeem_script)
        if sequence != params["sequence"]:
            raise InputValidationError(
                f"Sequence {sequence} differs from the script's {params['sequence']}",
                side="BTC", check="sequence-mismatch",
            )
        pubkey = privkey_to_pubkey(privkey)
        if hash160(pubkey) != params["refund_pkh"]:
            raise InputValidationError("Signing key is not the refund key",
                                       side="BTC", check="refund-key-mismatch")

        tx = self._unsigned_spend(destination, utxo, sequence)
        sig = self._sign_input(tx, redeem_script, privkey)
        tx.vin[0].scriptSig = CScript([sig, pubkey, CScriptOp(OP_FALSE), redeem_script])

        log.info(f"HTLC refund built: {utxo.txid}:{utxo.vout} -> {destination}, "
                 f"sequence=0x{sequence:08x}")
        return b2x(tx.serialize())

    # =========================================================================
    # Secret extraction
    # =========================================================================

    def extract_secret(self, tx: Union[str, Dict], expected_hash: Optional[str] = None) -> bytes:
        """
        Recover the preimage from a claim transaction's first input.

        Args:
            tx: Raw transaction hex, or a decoded transaction dict
                (getrawtransaction verbose / getblock verbosity 2)
            expected_hash: Optional hashlock the preimage must match

        Returns:
            32-byte preimage
        """
        script_sig = self._first_script_sig(tx)
        try:
            elements = list(CScript(script_sig))
        except CScriptInvalidError as e:
            raise ExtractionError(f"scriptSig does not decode: {e}", side="BTC", check="script-decode")

        if len(elements) == 4 and elements[2] in (0, b""):
            raise ExtractionError("Spend used the refund branch", side="BTC", check="refund-branch")
        if len(elements) < 5:
            raise ExtractionError(
                f"scriptSig has {len(elements)} elements, claim needs 5",
                side="BTC", check="element-count",
            )
        if elements[3] != 1:
            raise ExtractionError("Branch selector is not OP_TRUE", side="BTC", check="branch-selector")

        secret = elements[2]
        if not isinstance(secret, bytes) or len(secret) != SECRET_SIZE:
            raise ExtractionError("Preimage element has the wrong length",
                                  side="BTC", check="preimage-length")
        if expected_hash and sha256(secret).hex() != expected_hash.lower():
            raise ExtractionError("Preimage does not match hashlock",
                                  side="BTC", check="preimage-mismatch")
        return secret

    @staticmethod
    def _first_script_sig(tx: Union[str, Dict]) -> bytes:
        if isinstance(tx, dict):
            vin = tx.get("vin") or []
            if not vin:
                raise ExtractionError("Transaction has no inputs", side="BTC", check="no-inputs")
            script_sig = vin[0].get("scriptSig") or {}
            try:
                return bytes.fromhex(script_sig.get("hex", ""))
            except ValueError as e:
                raise ExtractionError(f"scriptSig hex does not decode: {e}",
                                      side="BTC", check="script-decode")

        try:
            decoded = CTransaction.deserialize(bytes.fromhex(tx))
        except (ValueError, SerializationError) as e:
            raise ExtractionError(f"Transaction does not decode: {e}", side="BTC", check="tx-decode")
        if not decoded.vin:
            raise ExtractionError("Transaction has no inputs", side="BTC", check="no-inputs")
        return bytes(decoded.vin[0].scriptSig)

    # =========================================================================
    # Node-backed helpers
    # =========================================================================

    def _require_client(self) -> BTCClient:
        if self.client is None:
            raise RuntimeError("BTCHtlc has no node client")
        return self.client

    def build_funding_tx(self, htlc_address: str, amount_sats: int) -> Tuple[str, int]:
        """
        Signed wallet payment to an HTLC address, not yet broadcast.

        Returns:
            (tx_hex, vout of the HTLC output)
        """
        tx_hex = self._require_client().create_funding_tx(htlc_address, amount_sats)
        script_pubkey = address_to_script_pubkey(htlc_address, self.network)
        tx = CTransaction.deserialize(bytes.fromhex(tx_hex))
        for vout, out in enumerate(tx.vout):
            if bytes(out.scriptPubKey) == script_pubkey and out.nValue == amount_sats:
                return tx_hex, vout
        raise ProtocolViolation(f"Wallet funding tx does not pay {amount_sats} sats to {htlc_address}",
                                side="BTC", check="funding-output")

    def fund_htlc(self, htlc_address: str, amount_sats: int) -> str:
        """Fund an HTLC address from the node wallet. Returns the funding txid."""
        tx_hex, _ = self.build_funding_tx(htlc_address, amount_sats)
        txid = self._require_client().send_raw_transaction(tx_hex)
        log.info(f"HTLC funded: {htlc_address} <- {amount_sats} sats, txid={txid}")
        return txid

    def check_htlc_funded(self, htlc_address: str, expected_amount: int,
                          min_confirmations: int = 1) -> Optional[UTXO]:
        """
        Find the funding output for an HTLC address.

        Returns:
            UTXO with at least expected_amount and min_confirmations, or None
        """
        utxo = self._require_client().find_utxo(htlc_address)
        if utxo is None:
            return None
        if utxo.amount < expected_amount or utxo.confirmations < min_confirmations:
            log.debug(f"HTLC {htlc_address}: {utxo.amount} sats, "
                      f"{utxo.confirmations} conf (need {expected_amount}, {min_confirmations})")
            return None
        return utxo

    def find_spending_tx(self, utxo: UTXO, start_height: int) -> Optional[Dict]:
        """
        Scan confirmed blocks for the transaction spending a locked output.

        Args:
            utxo: The locked output
            start_height: First block to scan (the funding height)

        Returns:
            Decoded spending transaction, or None while the output is unspent
        """
        client = self._require_client()
        tip = client.get_block_count()
        for height in range(start_height, tip + 1):
            block = client.get_block(client.get_block_hash(height), verbosity=2)
            for tx in block.get("tx", []):
                for vin in tx.get("vin", []):
                    if vin.get("txid") == utxo.txid and vin.get("vout") == utxo.vout:
                        log.info(f"HTLC {utxo.txid}:{utxo.vout} spent by {tx['txid']} "
                                 f"at height {height}")
                        return tx
        return None


def txid_of(tx_hex: str) -> str:
    """Txid of a serialized transaction."""
    return b2lx(CTransaction.deserialize(bytes.fromhex(tx_hex)).GetTxid())
