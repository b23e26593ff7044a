"""
settings.py
-----------
Room cipher configuration: algorithm, block-cipher mode and padding scheme.

A room fixes one CipherConfig at creation time; the server announces it to
every joining client in a `room_settings` envelope and clients adopt it
verbatim.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Union


class Algorithm(str, Enum):
    RC5 = "RC5"
    TWOFISH = "TwoFish"


class Mode(str, Enum):
    CBC = "CBC"
    PCBC = "PCBC"
    CFB = "CFB"
    OFB = "OFB"
    CTR = "CTR"


class Padding(str, Enum):
    ZEROS = "Zeros"
    ANSI_X923 = "ANSIX923"
    PKCS7 = "PKCS7"
    ISO10126 = "ISO10126"

    @classmethod
    def _missing_(cls, value):
        # accept the spelled-out name as well as the wire value
        if value == "ANSI_X923":
            return cls.ANSI_X923
        return None


# IV length == block size of the algorithm
IV_LENGTHS = {
    Algorithm.RC5: 8,
    Algorithm.TWOFISH: 16,
}

# Key size produced by derive_key() for each algorithm
KEY_SIZES = {
    Algorithm.RC5: 16,
    Algorithm.TWOFISH: 32,
}


def iv_length(algorithm: Union[Algorithm, str]) -> int:
    return IV_LENGTHS[Algorithm(algorithm)]


@dataclass(frozen=True)
class CipherConfig:
    algorithm: Algorithm
    mode: Mode
    padding: Padding

    @property
    def iv_length(self) -> int:
        return iv_length(self.algorithm)

    @property
    def block_size(self) -> int:
        return iv_length(self.algorithm)

    def to_wire(self) -> Dict[str, str]:
        return {
            "algorithm": self.algorithm.value,
            "mode": self.mode.value,
            "padding": self.padding.value,
        }

    @classmethod
    def from_wire(cls, content: Any) -> "CipherConfig":
        """
        Build a config from a `room_settings` content field.
        Accepts the nested object or its JSON text; raises ValueError otherwise.
        """
        if isinstance(content, str):
            try:
                content = json.loads(content)
            except json.JSONDecodeError as e:
                raise ValueError(f"room settings are not JSON: {e}") from e
        if not isinstance(content, dict):
            raise ValueError("room settings must be an object")
        try:
            return cls(
                algorithm=Algorithm(content["algorithm"]),
                mode=Mode(content["mode"]),
                padding=Padding(content["padding"]),
            )
        except KeyError as e:
            raise ValueError(f"room settings missing {e.args[0]!r}") from e

    def __str__(self) -> str:
        return f"{self.algorithm.value}/{self.mode.value}/{self.padding.value}"
