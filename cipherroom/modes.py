# modes.py
# Modes of operation and padding schemes over any block cipher from blocks.py
# - CBC, PCBC, CFB (full block), OFB, CTR
# - Zeros, ANSI X9.23, PKCS#7, ISO 10126
#
# Input is always padded to whole blocks first, so every mode works on
# block-aligned data and ciphertext length is always a multiple of the block
# size.

import os
from typing import Dict

from cryptography.hazmat.primitives import padding as sym_padding

from .errors import CipherError
from .settings import Mode, Padding


def xor_bytes(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


def _blocks(data: bytes, n: int):
    for i in range(0, len(data), n):
        yield data[i:i + n]


# ----------------------------
# Modes of operation
# ----------------------------

class ModeOfOperation:
    """Strategy interface: transforms block-aligned data under a keyed cipher."""

    def encrypt(self, cipher, data: bytes, iv: bytes) -> bytes:
        raise NotImplementedError

    def decrypt(self, cipher, data: bytes, iv: bytes) -> bytes:
        raise NotImplementedError


class CBC(ModeOfOperation):
    def encrypt(self, cipher, data, iv):
        prev, out = iv, []
        for block in _blocks(data, cipher.block_size):
            prev = cipher.encrypt_block(xor_bytes(block, prev))
            out.append(prev)
        return b"".join(out)

    def decrypt(self, cipher, data, iv):
        prev, out = iv, []
        for block in _blocks(data, cipher.block_size):
            out.append(xor_bytes(cipher.decrypt_block(block), prev))
            prev = block
        return b"".join(out)


class PCBC(ModeOfOperation):
    def encrypt(self, cipher, data, iv):
        chain, out = iv, []
        for block in _blocks(data, cipher.block_size):
            ct = cipher.encrypt_block(xor_bytes(block, chain))
            chain = xor_bytes(block, ct)
            out.append(ct)
        return b"".join(out)

    def decrypt(self, cipher, data, iv):
        chain, out = iv, []
        for block in _blocks(data, cipher.block_size):
            pt = xor_bytes(cipher.decrypt_block(block), chain)
            chain = xor_bytes(pt, block)
            out.append(pt)
        return b"".join(out)


class CFB(ModeOfOperation):
    def encrypt(self, cipher, data, iv):
        prev, out = iv, []
        for block in _blocks(data, cipher.block_size):
            prev = xor_bytes(block, cipher.encrypt_block(prev))
            out.append(prev)
        return b"".join(out)

    def decrypt(self, cipher, data, iv):
        prev, out = iv, []
        for block in _blocks(data, cipher.block_size):
            out.append(xor_bytes(block, cipher.encrypt_block(prev)))
            prev = block
        return b"".join(out)


class OFB(ModeOfOperation):
    def encrypt(self, cipher, data, iv):
        stream, out = iv, []
        for block in _blocks(data, cipher.block_size):
            stream = cipher.encrypt_block(stream)
            out.append(xor_bytes(block, stream))
        return b"".join(out)

    # OFB is its own inverse
    decrypt = encrypt


class CTR(ModeOfOperation):
    """Counter mode; the IV is the initial big-endian counter block."""

    def encrypt(self, cipher, data, iv):
        n = cipher.block_size
        counter = int.from_bytes(iv, "big")
        wrap = 1 << (8 * n)
        out = []
        for block in _blocks(data, n):
            keystream = cipher.encrypt_block(counter.to_bytes(n, "big"))
            out.append(xor_bytes(block, keystream))
            counter = (counter + 1) % wrap
        return b"".join(out)

    decrypt = encrypt


MODES: Dict[Mode, ModeOfOperation] = {
    Mode.CBC: CBC(),
    Mode.PCBC: PCBC(),
    Mode.CFB: CFB(),
    Mode.OFB: OFB(),
    Mode.CTR: CTR(),
}


def get_mode(mode: Mode) -> ModeOfOperation:
    try:
        return MODES[Mode(mode)]
    except (KeyError, ValueError) as e:
        raise CipherError(f"unsupported cipher mode: {mode}") from e


# ----------------------------
# Padding
# ----------------------------

def pad(data: bytes, block_size: int, scheme: Padding) -> bytes:
    scheme = Padding(scheme)
    if scheme is Padding.PKCS7:
        padder = sym_padding.PKCS7(block_size * 8).padder()
        return padder.update(data) + padder.finalize()
    if scheme is Padding.ANSI_X923:
        padder = sym_padding.ANSIX923(block_size * 8).padder()
        return padder.update(data) + padder.finalize()
    if scheme is Padding.ISO10126:
        n = block_size - (len(data) % block_size)
        return data + os.urandom(n - 1) + bytes([n])
    # Zeros: only fill up to the next boundary
    rem = len(data) % block_size
    if rem == 0:
        return data
    return data + b"\x00" * (block_size - rem)


def unpad(data: bytes, block_size: int, scheme: Padding) -> bytes:
    scheme = Padding(scheme)
    try:
        if scheme is Padding.PKCS7:
            unpadder = sym_padding.PKCS7(block_size * 8).unpadder()
            return unpadder.update(data) + unpadder.finalize()
        if scheme is Padding.ANSI_X923:
            unpadder = sym_padding.ANSIX923(block_size * 8).unpadder()
            return unpadder.update(data) + unpadder.finalize()
    except ValueError as e:
        raise CipherError(f"invalid {scheme.value} padding") from e
    if scheme is Padding.ISO10126:
        if not data:
            raise CipherError("invalid ISO10126 padding: empty input")
        n = data[-1]
        if n < 1 or n > block_size or n > len(data):
            raise CipherError("invalid ISO10126 padding")
        return data[:-n]
    return data.rstrip(b"\x00")
