"""Link cipher and authentication for Plejd mesh nodes.

Frames are XORed with a 16-byte keystream derived from the mesh key and the
address of the connected node:

    keystream = AES-128-ECB(key, addr || addr || addr[0:4])
    out[i]    = data[i] ^ keystream[i % 16]

The address is the node's BLE MAC in reverse byte order. XOR with a fixed
keystream is its own inverse, so one function both encrypts and decrypts.
"""

from __future__ import annotations

import hashlib

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

KEY_LENGTH = 16
MESH_ADDRESS_LENGTH = 6


def mesh_address_from_mac(mac: str) -> bytes:
    """``"AA:BB:CC:DD:EE:FF"`` -> ``b"\\xff\\xee\\xdd\\xcc\\xbb\\xaa"``"""
    raw = bytes.fromhex(mac.replace(":", "").replace("-", ""))
    if len(raw) != MESH_ADDRESS_LENGTH:
        raise ValueError(f"BLE address must be 6 bytes, got {mac!r}")
    return raw[::-1]


def parse_crypto_key(value: str) -> bytes:
    """Decode the site crypto key as served by the cloud API (hex, may contain dashes)."""
    key = bytes.fromhex(value.replace("-", ""))
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Crypto key must be {KEY_LENGTH} bytes, got {len(key)}")
    return key


def _keystream(key: bytes, mesh_address: bytes) -> bytes:
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Crypto key must be {KEY_LENGTH} bytes, got {len(key)}")
    if len(mesh_address) != MESH_ADDRESS_LENGTH:
        raise ValueError(f"Mesh address must be {MESH_ADDRESS_LENGTH} bytes, got {len(mesh_address)}")
    block = mesh_address + mesh_address + mesh_address[:4]
    encryptor = Cipher(algorithms.AES(key), modes.ECB()).encryptor()
    return encryptor.update(block) + encryptor.finalize()


def encrypt_decrypt(key: bytes, mesh_address: bytes, data: bytes) -> bytes:
    """Apply the link cipher to ``data``; applying it twice returns the input."""
    keystream = _keystream(key, mesh_address)
    return bytes(b ^ keystream[i % KEY_LENGTH] for i, b in enumerate(data))


def challenge_response(key: bytes, challenge: bytes) -> bytes:
    """Answer to the auth characteristic challenge.

    SHA-256 over ``key XOR challenge``, then the two digest halves XORed together.
    """
    if len(key) != KEY_LENGTH:
        raise ValueError(f"Crypto key must be {KEY_LENGTH} bytes, got {len(key)}")
    mixed = bytes(k ^ c for k, c in zip(key, challenge, strict=False))
    digest = hashlib.sha256(mixed).digest()
    return bytes(a ^ b for a, b in zip(digest[:16], digest[16:], strict=True))
