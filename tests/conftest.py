"""
conftest.py
-----------
Shared test harnesses: a fake websocket for the client, a fake CipherPort for
transfers large enough that the pure-Python block ciphers would be slow, and
a few room configs.
"""

import asyncio
import base64
import json

import pytest

from cipherroom.errors import CipherError
from cipherroom.keys import Sealed
from cipherroom.settings import Algorithm, CipherConfig, Mode, Padding


TWOFISH_CTR = CipherConfig(Algorithm.TWOFISH, Mode.CTR, Padding.PKCS7)
RC5_CBC = CipherConfig(Algorithm.RC5, Mode.CBC, Padding.PKCS7)


class FakeWebSocket:
    """
    Async context manager + async iterable fake websocket.
    Like a real connection, iteration waits for close() once the queued
    frames are used up.
    """
    def __init__(self, incoming_msgs=None):
        self._in = [m if isinstance(m, str) else json.dumps(m) for m in (incoming_msgs or [])]
        self.sent = []
        self.closed = False
        self.close_args = None
        self._closed = asyncio.Event()

    async def __aenter__(self): return self
    async def __aexit__(self, *args): await self.close()

    async def send(self, data): self.sent.append(data)

    async def close(self, *args, **kwargs):
        if not self.closed:
            self.close_args = (args, kwargs)
        self.closed = True
        self._closed.set()

    def __aiter__(self): return self

    async def __anext__(self):
        if self._in:
            await asyncio.sleep(0)
            return self._in.pop(0)
        await self._closed.wait()
        raise StopAsyncIteration

    def sent_json(self):
        return [json.loads(s) for s in self.sent]


class FakeCipherPort:
    """CipherPort stand-in: base64 'encryption' with a counter IV."""

    def __init__(self):
        self.encrypt_calls = 0
        self.ivs = []

    async def encrypt(self, config, key, plaintext):
        self.encrypt_calls += 1
        iv = base64.b64encode(self.encrypt_calls.to_bytes(config.iv_length, "big")).decode()
        self.ivs.append(iv)
        return Sealed(base64.b64encode(plaintext.encode()).decode(), iv)

    async def decrypt(self, config, key, ciphertext, iv):
        try:
            return base64.b64decode(ciphertext, validate=True).decode()
        except ValueError as e:
            raise CipherError(f"fake decrypt failed: {e}") from e

    def generate_iv(self, algorithm):
        return b"\x00" * 16


class Recorder:
    """Collects frames passed to an async send function."""

    def __init__(self):
        self.frames = []

    async def __call__(self, frame):
        self.frames.append(frame)

    def json(self):
        return [json.loads(f) for f in self.frames]


class CountingPacer:
    def __init__(self):
        self.calls = []

    async def acquire(self, nbytes=0):
        self.calls.append(nbytes)
        await asyncio.sleep(0)


@pytest.fixture
def fake_port():
    return FakeCipherPort()


@pytest.fixture
def recorder():
    return Recorder()
