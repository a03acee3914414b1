"""
Wallet Signature Utilities

This module handles the chain-specific cryptographic operations for wallet authentication.
It never talks to storage or the network: given a message and a signature it tells
which wallet produced the signature.

Authentication Flow:
1. Backend generates a random nonce -> generate_nonce()
2. Frontend signs the challenge message with the wallet
   - EVM wallets: personal_sign (EIP-191)
   - Cardano wallets: CIP-30 signData, the public key is sent along
3. Frontend sends: address, message, signature (and public key for Cardano)
4. Backend recovers the signer -> verify()
   and compares it with signer_identity(address)

Supported chains:
- evm: secp256k1 recovery through eth_account, address compared in lower case
- cardano: ED25519 verification through cryptography, payment key hash compared
  with the payment part of the address (pycardano)
"""

import base64
import binascii
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidSignature as Ed25519InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import is_address
from pycardano import Address
from pycardano.key import VerificationKey

from app.core.exceptions import InvalidWalletAddress, MalformedSignature


NONCE_NUM_BYTES = 32  # 32 bytes = 64 hex characters


class Chain(str, Enum):
    EVM = "evm"
    CARDANO = "cardano"


@dataclass(frozen=True)
class RecoveredSigner:
    """Who produced a signature.

    identity is the lower-case address for EVM and the payment key hash (hex)
    for Cardano, the same form signer_identity() returns for a wallet address.
    """

    chain: Chain
    identity: str


def generate_nonce(num_bytes: int = NONCE_NUM_BYTES) -> str:
    """
    Generate a cryptographically secure random nonce for wallet authentication.

    The nonce is embedded in the challenge message the wallet signs, so every
    challenge (and every signature over it) is unique.

    Args:
        num_bytes: Number of random bytes to generate (default: 32 = 64 hex chars)

    Returns:
        Hex-encoded random string (e.g., "a1b2c3d4...")
    """
    if num_bytes <= 0:
        num_bytes = NONCE_NUM_BYTES
    return secrets.token_hex(num_bytes)


def _decode_hex(value: str) -> bytes:
    """Helper: Decode hex string (optionally 0x prefixed) to bytes."""
    if value[:2].lower() == "0x":
        value = value[2:]
    return binascii.unhexlify(value.encode())


def _decode_base64(value: str) -> bytes:
    """Helper: Decode base64 string to bytes."""
    return base64.b64decode(value, validate=True)


def _decode_hex_or_base64(value: str) -> bytes:
    """
    Helper: Decode hex or base64 string to bytes.

    Wallets may send signatures/keys in either format, so we support both.
    """
    value = value.strip()
    try:
        return _decode_hex(value)
    except (binascii.Error, ValueError):
        try:
            return _decode_base64(value)
        except (binascii.Error, ValueError):
            raise MalformedSignature("Value must be hex or base64 encoded")


def _message_bytes(message: str) -> bytes:
    """
    Helper: Convert the signed message to bytes for ED25519 verification.

    CIP-30 signData takes a hex payload, so hex is decoded first and
    anything else is taken as UTF-8 text.
    """
    try:
        return _decode_hex(message.strip())
    except (binascii.Error, ValueError):
        return message.encode()


def _is_clean(text: str) -> bool:
    return bool(text) and all(ch.isprintable() for ch in text)


def detect_chain(address: str) -> Chain:
    """Tell the wallet ecosystem from the address text."""
    address = (address or "").strip()
    if address[:2].lower() == "0x":
        return Chain.EVM
    if address.startswith("addr"):
        return Chain.CARDANO
    raise InvalidWalletAddress("Unsupported wallet address", wallet_address=address)


def canonical_address(address: str) -> str:
    """
    Return the canonical text form of a wallet address.

    EVM addresses are lower-cased, Cardano addresses are re-encoded by pycardano.
    Every store keys its records by this form.

    Raises:
        InvalidWalletAddress: if the address is not a valid EVM or Cardano address
    """
    address = (address or "").strip()
    chain = detect_chain(address)
    if chain is Chain.EVM:
        if not is_address(address):
            raise InvalidWalletAddress("Invalid EVM address", wallet_address=address)
        return address.lower()

    try:
        return Address.decode(address).encode()
    except Exception as exc:
        raise InvalidWalletAddress("Invalid Cardano address", wallet_address=address) from exc


def signer_identity(wallet_address: str) -> str:
    """Identity a RecoveredSigner must carry to own wallet_address."""
    address = canonical_address(wallet_address)
    if detect_chain(address) is Chain.EVM:
        return address

    payment_part = Address.decode(address).payment_part
    if payment_part is None:
        raise InvalidWalletAddress("Address has no payment credential", wallet_address=address)
    return payment_part.payload.hex()


def _recover_evm(message: str, signature: str) -> str:
    signature_bytes = _decode_hex_or_base64(signature)
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature_bytes)
    except Exception as exc:
        raise MalformedSignature("EVM signature recovery failed") from exc
    return str(recovered).lower()


def _recover_cardano(message: str, signature: str, public_key: Optional[str]) -> str:
    if not public_key:
        raise MalformedSignature("Public key is required for Cardano signatures")

    signature_bytes = _decode_hex_or_base64(signature)
    public_key_bytes = _decode_hex_or_base64(public_key)
    try:
        Ed25519PublicKey.from_public_bytes(public_key_bytes).verify(
            signature_bytes, _message_bytes(message)
        )
    except (Ed25519InvalidSignature, ValueError) as exc:
        raise MalformedSignature("ED25519 signature verification failed") from exc

    return VerificationKey.from_primitive(public_key_bytes).hash().payload.hex()


def verify(
    message: str,
    signature: str,
    chain: Chain = Chain.EVM,
    public_key: Optional[str] = None,
) -> RecoveredSigner:
    """
    Recover the signer of a wallet signature.

    Pure function: no storage, no network. The caller decides whether the
    recovered signer owns the claimed address (see signer_identity()).

    Args:
        message: The exact challenge text the wallet signed
        signature: Signature (hex or base64 encoded)
        chain: Wallet ecosystem of the claimed address
        public_key: ED25519 public key, required for Cardano

    Returns:
        RecoveredSigner with the chain and the signer identity

    Raises:
        MalformedSignature: if decoding or recovery fails, or the recovered
            identity is empty or contains control characters

    Example:
        signer = verify(message, "0x5f3c...", Chain.EVM)
        if signer.identity != signer_identity("0xAbC..."):
            # signed by another wallet
    """
    if not message or not signature:
        raise MalformedSignature("Message and signature are required")

    if chain is Chain.CARDANO:
        identity = _recover_cardano(message, signature, public_key)
    else:
        identity = _recover_evm(message, signature)

    if not _is_clean(identity):
        raise MalformedSignature("Recovered signer is empty or not printable")
    return RecoveredSigner(chain=chain, identity=identity)
