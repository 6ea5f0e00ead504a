"""
Cryptographic module for interest-matched encrypted chat.

Implements the per-session handshake run by both endpoints:
- P-256 ECDH key agreement reduced to an AES-128 session key
- AES-GCM message encryption with a fixed IV (see primitives for caveats)
"""

from .primitives import (
    KeyPair,
    generate_key_pair,
    derive_shared_key,
    encrypt,
    decrypt,
    serialize_public_key,
    deserialize_public_key,
    CryptoError,
    InvalidPeerKey,
    AuthenticationFailure,
    EntropyFailure
)

__all__ = [
    'KeyPair',
    'generate_key_pair',
    'derive_shared_key',
    'encrypt',
    'decrypt',
    'serialize_public_key',
    'deserialize_public_key',
    'CryptoError',
    'InvalidPeerKey',
    'AuthenticationFailure',
    'EntropyFailure'
]
