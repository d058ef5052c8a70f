"""
WireGuard keypair generation and validation.

This module provides functionality for:
- Generating X25519 keypairs for client peers
- Deriving and validating base64 keys
- Rejecting placeholder keys reported by unconfigured or simulated nodes

Keys are stored in base64 format as per WireGuard conventions. Client
private keys are never persisted by the fleet engine.
"""

import base64
import binascii
from typing import Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

SERVER_PUBLIC_KEY_PLACEHOLDER = "SERVER_PUBLIC_KEY_PLACEHOLDER_BASE64"

# Markers that identify a key as a stand-in rather than a real node key
PLACEHOLDER_MARKERS = ("SIMULATION", "mock", "PLACEHOLDER")

MIN_NODE_KEY_LENGTH = 10


class WireGuardKeyError(Exception):
    """Custom exception for WireGuard key operations."""
    pass


def generate_keypair() -> Tuple[str, str]:
    """
    Generate a new WireGuard keypair using X25519.

    Returns:
        Tuple[str, str]: (private_key, public_key), each 44 base64 characters.
    """
    private_key_obj = X25519PrivateKey.generate()

    private_key_bytes = private_key_obj.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_key_bytes = private_key_obj.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )

    return (
        base64.b64encode(private_key_bytes).decode("ascii"),
        base64.b64encode(public_key_bytes).decode("ascii"),
    )


def get_public_key_from_private(private_key: str) -> str:
    """
    Derive the public key from a private key.

    Raises:
        WireGuardKeyError: If the private key is invalid
    """
    try:
        private_key_bytes = base64.b64decode(private_key, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise WireGuardKeyError(f"Invalid private key format: {e}") from e

    if len(private_key_bytes) != 32:
        raise WireGuardKeyError(
            f"Invalid private key length: expected 32 bytes, got {len(private_key_bytes)}"
        )

    public_key_bytes = X25519PrivateKey.from_private_bytes(private_key_bytes).public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(public_key_bytes).decode("ascii")


def validate_public_key_format(public_key) -> bool:
    """
    Validate that a public key matches the WireGuard base64 format.

    WireGuard public keys are 44 characters long and decode to 32 bytes.
    """
    if public_key is None or not isinstance(public_key, str):
        return False

    if len(public_key) != 44:
        return False

    try:
        return len(base64.b64decode(public_key, validate=True)) == 32
    except (binascii.Error, ValueError):
        return False


def is_placeholder_key(public_key: Optional[str]) -> bool:
    """True for keys that are missing or contain a placeholder marker."""
    if not public_key:
        return True
    return any(marker in public_key for marker in PLACEHOLDER_MARKERS)


def is_usable_node_key(public_key: Optional[str]) -> bool:
    """
    Decide whether a key read from a node can be stored.

    Rejects empty values, values shorter than ten characters and
    placeholder markers. Format is not checked further so that nodes with
    non-standard key encodings are still accepted.
    """
    if not public_key or len(public_key.strip()) < MIN_NODE_KEY_LENGTH:
        return False
    return not is_placeholder_key(public_key)
