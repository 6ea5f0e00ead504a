"""
Cryptographic Primitives for the Interest Chat Handshake

Each endpoint generates a fresh P-256 key pair per session, exchanges the
public half through the relay, and reduces the ECDH shared secret to an
AES-128 key. Messages are sealed with AES-GCM.

Known weakness: every message uses the same all-zero 12-byte IV. Reusing an
IV under one key leaks relationships between plaintexts (and lets an attacker
who sees two messages forge tags). A hardened variant must draw a random IV
per message and send it alongside the ciphertext, which changes the
``message`` event on the wire.
"""

from dataclasses import dataclass
from typing import Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

CURVE = ec.SECP256R1()
SESSION_KEY_SIZE = 16  # AES-128
TAG_SIZE = 16
FIXED_IV = bytes(12)


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


class InvalidPeerKey(CryptoError):
    """The partner's public key is malformed or not a point on the curve"""
    pass


class AuthenticationFailure(CryptoError):
    """A ciphertext/tag pair did not verify under the session key"""
    pass


class EntropyFailure(CryptoError):
    """Key generation could not obtain randomness; fatal for the session"""
    pass


@dataclass
class KeyPair:
    """
    Per-session EC key pair.

    Attributes:
        private_key: Never leaves the owning endpoint
        public_key: Sent to the partner through the relay
    """
    private_key: ec.EllipticCurvePrivateKey
    public_key: ec.EllipticCurvePublicKey

    def public_bytes(self) -> bytes:
        """Encoded public key as sent on the wire"""
        return serialize_public_key(self.public_key)


def generate_key_pair() -> KeyPair:
    """
    Generate a P-256 key pair for one session.

    Returns:
        Fresh KeyPair

    Raises:
        EntropyFailure: If the backend cannot generate a key
    """
    try:
        private_key = ec.generate_private_key(CURVE)
    except Exception as e:
        raise EntropyFailure(f"Key generation failed: {e}") from e
    return KeyPair(private_key=private_key, public_key=private_key.public_key())


def derive_shared_key(
    own_private: ec.EllipticCurvePrivateKey,
    peer_public: Union[bytes, ec.EllipticCurvePublicKey],
) -> bytes:
    """
    Compute the ECDH shared secret and reduce it to the session key.

    Both peers obtain the same 16 bytes: the leading bytes of the raw shared
    secret (the x coordinate of the shared point).

    Args:
        own_private: Our private key
        peer_public: Partner's public key, encoded or as a key object

    Returns:
        16-byte AES-128 session key

    Raises:
        InvalidPeerKey: If the peer key cannot be used on our curve
    """
    if isinstance(peer_public, (bytes, bytearray)):
        peer_public = deserialize_public_key(bytes(peer_public))
    elif not isinstance(peer_public, ec.EllipticCurvePublicKey):
        raise InvalidPeerKey(f"Unsupported public key type: {type(peer_public).__name__}")

    if peer_public.curve.name != CURVE.name:
        raise InvalidPeerKey(f"Peer key is on {peer_public.curve.name}, expected {CURVE.name}")

    try:
        shared_secret = own_private.exchange(ec.ECDH(), peer_public)
    except ValueError as e:
        raise InvalidPeerKey(f"Key agreement failed: {e}") from e
    return shared_secret[:SESSION_KEY_SIZE]


def encrypt(session_key: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
    """
    Encrypt a message with AES-128-GCM under the fixed IV.

    Args:
        session_key: 16-byte key from derive_shared_key
        plaintext: Message to encrypt

    Returns:
        Tuple of (ciphertext, tag)
    """
    sealed = AESGCM(session_key).encrypt(FIXED_IV, plaintext, None)
    return sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]


def decrypt(session_key: bytes, ciphertext: bytes, tag: bytes) -> bytes:
    """
    Decrypt and verify a message.

    Args:
        session_key: 16-byte key from derive_shared_key
        ciphertext: Encrypted message body
        tag: 16-byte GCM authentication tag

    Returns:
        Decrypted plaintext

    Raises:
        AuthenticationFailure: If the tag does not verify
    """
    if len(tag) != TAG_SIZE:
        raise AuthenticationFailure(f"Tag must be {TAG_SIZE} bytes, got {len(tag)}")

    try:
        return AESGCM(session_key).decrypt(FIXED_IV, ciphertext + tag, None)
    except InvalidTag as e:
        raise AuthenticationFailure("Message failed authentication") from e


def serialize_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Serialize an EC public key as an uncompressed X9.62 point"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.UncompressedPoint
    )


def deserialize_public_key(key_bytes: bytes) -> ec.EllipticCurvePublicKey:
    """
    Deserialize an encoded point into an EC public key.

    Raises:
        InvalidPeerKey: If the bytes are not a valid point on the curve
    """
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(CURVE, key_bytes)
    except ValueError as e:
        raise InvalidPeerKey(f"Invalid public key: {e}") from e
