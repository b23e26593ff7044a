# blocks.py
# Block cipher primitives used by the room cipher modes
# - RC5-32/12 (64-bit block, variable key 1..255 bytes)
# - Twofish (128-bit block, 128/192/256-bit key), fully keyed S-box tables
#
# Each class exposes block_size, encrypt_block(bytes) and decrypt_block(bytes)
# and is registered in ALGORITHMS so modes never branch on the algorithm.

from functools import lru_cache
from typing import Dict, List

from .errors import CipherError
from .settings import Algorithm

MASK32 = 0xFFFFFFFF


def rol32(x: int, n: int) -> int:
    n &= 31
    return ((x << n) | (x >> (32 - n))) & MASK32


def ror32(x: int, n: int) -> int:
    n &= 31
    return ((x >> n) | (x << (32 - n))) & MASK32


# ----------------------------
# RC5-32/12/b
# ----------------------------

class RC5:
    block_size = 8
    rounds = 12

    P32 = 0xB7E15163
    Q32 = 0x9E3779B9

    def __init__(self, key: bytes):
        if not 1 <= len(key) <= 255:
            raise CipherError("rc5: key must be 1..255 bytes")
        self._S = self._expand_key(bytes(key))

    def _expand_key(self, key: bytes) -> List[int]:
        c = max(1, (len(key) + 3) // 4)
        padded = key + b"\x00" * (4 * c - len(key))
        L = [int.from_bytes(padded[4 * i:4 * i + 4], "little") for i in range(c)]

        t = 2 * (self.rounds + 1)
        S = [self.P32]
        for _ in range(1, t):
            S.append((S[-1] + self.Q32) & MASK32)

        A = B = i = j = 0
        for _ in range(3 * max(t, c)):
            A = S[i] = rol32((S[i] + A + B) & MASK32, 3)
            B = L[j] = rol32((L[j] + A + B) & MASK32, A + B)
            i = (i + 1) % t
            j = (j + 1) % c
        return S

    def encrypt_block(self, block: bytes) -> bytes:
        S = self._S
        A = (int.from_bytes(block[0:4], "little") + S[0]) & MASK32
        B = (int.from_bytes(block[4:8], "little") + S[1]) & MASK32
        for i in range(1, self.rounds + 1):
            A = (rol32(A ^ B, B) + S[2 * i]) & MASK32
            B = (rol32(B ^ A, A) + S[2 * i + 1]) & MASK32
        return A.to_bytes(4, "little") + B.to_bytes(4, "little")

    def decrypt_block(self, block: bytes) -> bytes:
        S = self._S
        A = int.from_bytes(block[0:4], "little")
        B = int.from_bytes(block[4:8], "little")
        for i in range(self.rounds, 0, -1):
            B = ror32((B - S[2 * i + 1]) & MASK32, A) ^ A
            A = ror32((A - S[2 * i]) & MASK32, B) ^ B
        B = (B - S[1]) & MASK32
        A = (A - S[0]) & MASK32
        return A.to_bytes(4, "little") + B.to_bytes(4, "little")


# ----------------------------
# Twofish
# ----------------------------

_Q0 = bytes.fromhex(
    "A967B3E804FDA376" "9A928078E4DDD138" "0DC6359818F7EC6C" "43753726FA139448"
    "F2D08B308454DF23" "195B3D59F3AEA282" "6301832ED9519B7C" "A6EBA5BE160CE361"
    "C08C3AF5732C250B" "BB4E896B536AB4F1" "E1E6BD45E2F4B666" "CC950356D41C1ED7"
    "FBC38EB5E9CFBFBA" "EA7739AF33C96271" "817909AD24CDF9D8" "E5C5B94D440886E7"
    "A11DAAED0670B2D2" "417BA01131C22790" "20F660FF965CB1AB" "9E9C521B5F930AEF"
    "918549EE2D4F8F3B" "47876D46D63E6964" "2ACECB2FFC97057A" "AC7FD51A4B0EA75A"
    "28143F29883C4C02" "B8DAB017551F8A7D" "57C78D74B7C49F72" "7E15221258079934"
    "6E50DE6865BCDBF8" "C8A82B40DCFE32A4" "CA1021F0D35D0F00" "6F9D36424A5EC1E0"
)

_Q1 = bytes.fromhex(
    "75F3C6F4DB7BFBC8" "4AD3E66B457DE84B" "D632D8FD3771F1E1" "300FF81B87FA063F"
    "5EBAAE5B8A00BC9D" "6DC1B10E805DD2D5" "A0840714B5902CA3" "B2734C5492743651"
    "38B0BD5AFC606296" "6C42F7107C28278C" "13959CC724463B70" "CAE385CB11D093B8"
    "A68320FF9F77C3CC" "036F08BF40E72BE2" "790CAA82413AEAB9" "E49AA4977EDA7A17"
    "6694A11D3DF0DEB3" "0B72A71CEFD1533E" "8F33265FEC762A49" "8188EE21C41AEBD9"
    "C53999CDAD318B01" "1823DD1F4E2DF948" "4FF2658E785C5819" "8DE59857677F0564"
    "AF63B6FEF5B73CA5" "CEE96844E04D4369" "292EAC1559A80A9E" "6E47DF34356ACFDC"
    "22C9C09B89D4EDAB" "12A20D52BB022FA9" "D7611EB45004F6C2" "162586565509BE91"
)

_Q = (_Q0, _Q1)

_MDS = (
    (0x01, 0xEF, 0x5B, 0x5B),
    (0x5B, 0xEF, 0xEF, 0x01),
    (0xEF, 0x5B, 0x01, 0xEF),
    (0xEF, 0x01, 0xEF, 0x5B),
)

_RS = (
    (0x01, 0xA4, 0x55, 0x87, 0x5A, 0x58, 0xDB, 0x9E),
    (0xA4, 0x56, 0x82, 0xF3, 0x1E, 0xC6, 0x68, 0xE5),
    (0x02, 0xA1, 0xFC, 0xC1, 0x47, 0xAE, 0x3D, 0x19),
    (0xA4, 0x55, 0x87, 0x5A, 0x58, 0xDB, 0x9E, 0x03),
)

_MDS_POLY = 0x169  # x^8 + x^6 + x^5 + x^3 + 1
_RS_POLY = 0x14D   # x^8 + x^6 + x^3 + x^2 + 1

# q-permutation choice per byte position, outermost key layer first (l3 .. l0)
_LAYERS = (
    (1, 0, 0, 1),
    (1, 1, 0, 0),
    (0, 1, 0, 1),
    (0, 0, 1, 1),
)
_FINAL = (1, 0, 1, 0)

_RHO = 0x01010101


def _gf_mul(a: int, b: int, poly: int) -> int:
    r = 0
    while b:
        if b & 1:
            r ^= a
        a <<= 1
        if a & 0x100:
            a ^= poly
        b >>= 1
    return r


def _word_bytes(w: int) -> List[int]:
    return [w & 0xFF, (w >> 8) & 0xFF, (w >> 16) & 0xFF, (w >> 24) & 0xFF]


def _permute(pos: int, x: int, key_bytes: List[List[int]]) -> int:
    """Key-dependent byte permutation of h() for one byte position."""
    for layer in range(len(key_bytes) - 1, -1, -1):
        x = _Q[_LAYERS[3 - layer][pos]][x] ^ key_bytes[layer][pos]
    return _Q[_FINAL[pos]][x]


def _mds_column(pos: int, y: int) -> int:
    return (
        _gf_mul(_MDS[0][pos], y, _MDS_POLY)
        | _gf_mul(_MDS[1][pos], y, _MDS_POLY) << 8
        | _gf_mul(_MDS[2][pos], y, _MDS_POLY) << 16
        | _gf_mul(_MDS[3][pos], y, _MDS_POLY) << 24
    )


def _h(x: int, words: List[int]) -> int:
    kb = [_word_bytes(w) for w in words]
    xb = _word_bytes(x)
    z = 0
    for pos in range(4):
        z ^= _mds_column(pos, _permute(pos, xb[pos], kb))
    return z


class Twofish:
    block_size = 16

    def __init__(self, key: bytes):
        if len(key) not in (16, 24, 32):
            raise CipherError("twofish: key must be 16, 24 or 32 bytes")
        self._expand_key(bytes(key))

    def _expand_key(self, key: bytes) -> None:
        k = len(key) // 8
        M = [int.from_bytes(key[4 * i:4 * i + 4], "little") for i in range(2 * k)]
        Me, Mo = M[0::2], M[1::2]

        # S-box key words via the Reed-Solomon code, used in reverse order
        S = []
        for i in range(k):
            chunk = key[8 * i:8 * i + 8]
            s = 0
            for row in range(4):
                v = 0
                for col in range(8):
                    v ^= _gf_mul(_RS[row][col], chunk[col], _RS_POLY)
                s |= v << (8 * row)
            S.append(s)
        S.reverse()

        K = []
        for i in range(20):
            A = _h(2 * i * _RHO, Me)
            B = rol32(_h((2 * i + 1) * _RHO, Mo), 8)
            K.append((A + B) & MASK32)
            K.append(rol32((A + 2 * B) & MASK32, 9))
        self._K = K

        # g() collapsed into four 256-entry tables
        sb = [_word_bytes(w) for w in S]
        self._T = [
            [_mds_column(pos, _permute(pos, x, sb)) for x in range(256)]
            for pos in range(4)
        ]

    def _g(self, x: int) -> int:
        T = self._T
        return (
            T[0][x & 0xFF]
            ^ T[1][(x >> 8) & 0xFF]
            ^ T[2][(x >> 16) & 0xFF]
            ^ T[3][x >> 24]
        )

    def encrypt_block(self, block: bytes) -> bytes:
        K = self._K
        R = [int.from_bytes(block[4 * i:4 * i + 4], "little") ^ K[i] for i in range(4)]
        r0, r1, r2, r3 = R
        for r in range(16):
            t0 = self._g(r0)
            t1 = self._g(rol32(r1, 8))
            f0 = (t0 + t1 + K[2 * r + 8]) & MASK32
            f1 = (t0 + 2 * t1 + K[2 * r + 9]) & MASK32
            r0, r1, r2, r3 = ror32(r2 ^ f0, 1), rol32(r3, 1) ^ f1, r0, r1
        out = (r2 ^ K[4], r3 ^ K[5], r0 ^ K[6], r1 ^ K[7])
        return b"".join(w.to_bytes(4, "little") for w in out)

    def decrypt_block(self, block: bytes) -> bytes:
        K = self._K
        C = [int.from_bytes(block[4 * i:4 * i + 4], "little") for i in range(4)]
        r0, r1, r2, r3 = C[2] ^ K[6], C[3] ^ K[7], C[0] ^ K[4], C[1] ^ K[5]
        for r in range(15, -1, -1):
            p0, p1 = r2, r3
            t0 = self._g(p0)
            t1 = self._g(rol32(p1, 8))
            f0 = (t0 + t1 + K[2 * r + 8]) & MASK32
            f1 = (t0 + 2 * t1 + K[2 * r + 9]) & MASK32
            r0, r1, r2, r3 = p0, p1, rol32(r0, 1) ^ f0, ror32(r1 ^ f1, 1)
        out = (r0 ^ K[0], r1 ^ K[1], r2 ^ K[2], r3 ^ K[3])
        return b"".join(w.to_bytes(4, "little") for w in out)


# ----------------------------
# Registry
# ----------------------------

ALGORITHMS: Dict[Algorithm, type] = {
    Algorithm.RC5: RC5,
    Algorithm.TWOFISH: Twofish,
}


@lru_cache(maxsize=32)
def block_cipher(algorithm: Algorithm, key: bytes):
    """Return a keyed block cipher, reusing the key schedule for repeat keys."""
    try:
        cls = ALGORITHMS[Algorithm(algorithm)]
    except (KeyError, ValueError) as e:
        raise CipherError(f"unsupported algorithm: {algorithm}") from e
    return cls(key)
