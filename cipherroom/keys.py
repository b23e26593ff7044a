# keys.py
# Cipher boundary for room traffic
# - Base64 encode/decode (standard alphabet, padded, as carried in JSON)
# - Room password -> key material
# - Pure encrypt/decrypt of bytes under a CipherConfig and explicit IV
# - CipherPort: async encrypt (fresh IV every call) / decrypt / generate_iv

import asyncio
import base64
import binascii
import os
from dataclasses import dataclass
from typing import Union

from cryptography.hazmat.primitives import hashes

from .blocks import block_cipher
from .errors import CipherError
from .modes import get_mode, pad, unpad
from .settings import KEY_SIZES, Algorithm, CipherConfig, iv_length

# ----------------------------
# Base64 (JSON carries standard, padded base64)
# ----------------------------

def b64encode(data: Union[bytes, bytearray, memoryview]) -> str:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError("b64encode expects bytes-like input")
    return base64.b64encode(bytes(data)).decode("ascii")


def b64decode(s: Union[str, bytes]) -> bytes:
    if isinstance(s, str):
        s = s.encode("ascii")
    if not isinstance(s, bytes):
        raise TypeError("b64decode expects str/bytes input")
    return base64.b64decode(s, validate=True)

# ----------------------------
# Key material
# ----------------------------

def derive_key(password: str, algorithm: Union[Algorithm, str]) -> bytes:
    """SHA-256 of the room password, cut to the algorithm's key size."""
    if not password:
        raise CipherError("room password is empty")
    digest = hashes.Hash(hashes.SHA256())
    digest.update(password.encode("utf-8"))
    return digest.finalize()[:KEY_SIZES[Algorithm(algorithm)]]


def generate_iv(algorithm: Union[Algorithm, str]) -> bytes:
    return os.urandom(iv_length(algorithm))

# ----------------------------
# Pure transforms
# ----------------------------

def _check_iv(config: CipherConfig, iv: bytes) -> None:
    if len(iv) != config.iv_length:
        raise CipherError(
            f"{config.algorithm.value} needs a {config.iv_length}-byte IV, got {len(iv)}"
        )


def encrypt_bytes(config: CipherConfig, key: bytes, data: bytes, iv: bytes) -> bytes:
    _check_iv(config, iv)
    cipher = block_cipher(config.algorithm, bytes(key))
    padded = pad(data, cipher.block_size, config.padding)
    return get_mode(config.mode).encrypt(cipher, padded, iv)


def decrypt_bytes(config: CipherConfig, key: bytes, data: bytes, iv: bytes) -> bytes:
    _check_iv(config, iv)
    cipher = block_cipher(config.algorithm, bytes(key))
    if len(data) % cipher.block_size:
        raise CipherError(
            f"ciphertext length {len(data)} is not a multiple of {cipher.block_size}"
        )
    plain = get_mode(config.mode).decrypt(cipher, data, iv)
    return unpad(plain, cipher.block_size, config.padding)

# ----------------------------
# CipherPort
# ----------------------------

@dataclass(frozen=True)
class Sealed:
    """Ciphertext and the IV it was produced with, both base64 text."""
    ciphertext: str
    iv: str


def _seal(config: CipherConfig, key: bytes, plaintext: str) -> Sealed:
    iv = generate_iv(config.algorithm)
    ct = encrypt_bytes(config, key, plaintext.encode("utf-8"), iv)
    return Sealed(ciphertext=b64encode(ct), iv=b64encode(iv))


def _open(config: CipherConfig, key: bytes, ciphertext: str, iv: str) -> str:
    try:
        raw_ct = b64decode(ciphertext)
        raw_iv = b64decode(iv)
    except (binascii.Error, ValueError, TypeError) as e:
        raise CipherError(f"ciphertext or IV is not valid base64: {e}") from e
    plain = decrypt_bytes(config, key, raw_ct, raw_iv)
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CipherError("decrypted data is not UTF-8 text") from e


class CipherPort:
    """
    Encrypt/decrypt text under a room config.

    encrypt() always draws its own IV, so a new message can never reuse one.
    The block transforms run in the default executor; each call completes
    before the caller issues the next one.
    """

    async def encrypt(self, config: CipherConfig, key: bytes, plaintext: str) -> Sealed:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _seal, config, key, plaintext)

    async def decrypt(self, config: CipherConfig, key: bytes, ciphertext: str, iv: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _open, config, key, ciphertext, iv)

    def generate_iv(self, algorithm: Union[Algorithm, str]) -> bytes:
        return generate_iv(algorithm)
