"""
transfer.py
-----------
Chunked, encrypted file transfer over room envelopes.

Sender:   file_start(size) -> file_chunk * ceil(size / chunk_size) -> file_end
Receiver: per transfer key, Absent -> Receiving -> Complete | Failed

Each chunk is base64 text of the raw bytes, encrypted under the room config
with a fresh IV. The receiver relies on the transport delivering the chunks
of one transfer in order and exactly once; there are no sequence numbers.
"""

import base64
import binascii
import dataclasses
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from . import config as cfg
from .envelope import (
    Envelope,
    MessageType,
    encode,
    file_chunk_envelope,
    file_end_envelope,
    file_start_envelope,
    now_iso,
)
from .errors import (
    ChatError,
    CipherError,
    MissingIV,
    SizeMismatch,
    TransferAborted,
    TransferError,
    UnknownTransfer,
)
from .keys import CipherPort
from .pacing import IntervalPacer
from .settings import CipherConfig

logger = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[None]]
ProgressFn = Callable[[int, int, float], None]


def make_transfer_id(sender: str, sent_at: str, filename: str) -> str:
    return f"{sender}:{sent_at}:{filename}"


def percent(done: int, total: int) -> float:
    if total <= 0:
        return 100.0
    return done / total * 100.0

# ---------------------------------------------------------------------------
# Sender
# ---------------------------------------------------------------------------

class FileTransferSender:
    """Splits a payload into encrypted chunk envelopes and pushes them out."""

    def __init__(self, port: CipherPort, send: SendFn, chunk_size: int = cfg.CHUNK_SIZE,
                 pacer=None):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.port = port
        self.send = send
        self.chunk_size = chunk_size
        self.pacer = pacer if pacer is not None else IntervalPacer(cfg.CHUNK_INTERVAL)

    def chunk_count(self, size: int) -> int:
        return math.ceil(size / self.chunk_size)

    async def send_file(self, sender: str, config: CipherConfig, key: bytes, filename: str,
                        payload: bytes, on_progress: Optional[ProgressFn] = None) -> str:
        """
        Send one file. Returns the transfer id.
        Any failure raises TransferAborted; chunks already sent stay sent.
        """
        total = len(payload)
        sent = 0
        started = now_iso()
        transfer_id = make_transfer_id(sender, started, filename)
        try:
            await self.send(encode(file_start_envelope(sender, filename, total, transfer_id, started)))
            logger.info("sending %s (%d bytes, %d chunks)", filename, total, self.chunk_count(total))

            for index, offset in enumerate(range(0, total, self.chunk_size)):
                chunk = payload[offset:offset + self.chunk_size]
                if index:
                    await self.pacer.acquire(len(chunk))
                text = base64.b64encode(chunk).decode("ascii")
                sealed = await self.port.encrypt(config, key, text)
                await self.send(encode(file_chunk_envelope(
                    sender, filename, sealed.ciphertext, sealed.iv, transfer_id)))
                sent += len(chunk)
                if on_progress:
                    on_progress(sent, total, percent(sent, total))

            if total == 0 and on_progress:
                on_progress(0, 0, 100.0)
            await self.send(encode(file_end_envelope(sender, filename, transfer_id)))
        except Exception as e:
            logger.warning("transfer of %s aborted at %d/%d bytes: %s", filename, sent, total, e)
            raise TransferAborted(filename, sent, total, e) from e
        return transfer_id

# ---------------------------------------------------------------------------
# Receiver
# ---------------------------------------------------------------------------

class TransferState(str, Enum):
    RECEIVING = "receiving"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class IncomingFile:
    sender: str
    filename: str
    entry_id: str
    declared_size: int
    chunks: List[bytes] = field(default_factory=list)
    received_size: int = 0
    progress: float = 0.0
    started_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TransferUpdate:
    entry_id: str
    filename: str
    sender: str
    state: TransferState
    progress: float
    received: int
    expected: int
    data: Optional[bytes] = None
    error: Optional[ChatError] = None
    # a transfer this start pushed out, already failed
    replaced: Optional["TransferUpdate"] = None
    # another stray frame for a key that already failed or was never started
    repeat: bool = False


class FileTransferReceiver:
    """
    In-progress inbound transfers, keyed by transfer_id (or filename when the
    sender did not supply one). Entries are removed on completion or failure.

    Keys that failed recently are remembered so the rest of their frames are
    reported once, not once per chunk.
    """

    # progress shown while receiving tops out here; 100 means Complete
    RECEIVING_CAP = 99.0
    FAILED_MEMORY = 64

    def __init__(self, port: CipherPort):
        self.port = port
        self._transfers: Dict[str, IncomingFile] = {}
        self._failed: "OrderedDict[str, None]" = OrderedDict()

    @staticmethod
    def transfer_key(env: Envelope) -> str:
        return env.transfer_id or env.filename or ""

    def __len__(self) -> int:
        return len(self._transfers)

    def __contains__(self, key: str) -> bool:
        return key in self._transfers

    def get(self, key: str) -> Optional[IncomingFile]:
        return self._transfers.get(key)

    async def handle(self, env: Envelope, config: Optional[CipherConfig], key: Optional[bytes]) -> TransferUpdate:
        kind = env.kind
        if kind is MessageType.FILE_START:
            return self.start(env)
        if kind is MessageType.FILE_CHUNK:
            return await self.add_chunk(env, config, key)
        if kind is MessageType.FILE_END:
            return self.finish(env)
        raise ValueError(f"not a file envelope: {env.message_type}")

    # --- transitions -------------------------------------------------------

    def start(self, env: Envelope) -> TransferUpdate:
        filename = env.filename or ""
        entry_id = env.transfer_id or make_transfer_id(env.sender, env.sent_at or "", filename)
        k = self.transfer_key(env)
        content = env.content
        # plain ASCII digits only: no sign, no underscores, no other scripts
        if not (isinstance(content, str) and content.isascii() and content.isdigit()):
            err = TransferError(f"bad size {content!r} announced for {filename}", filename)
            self._remember_failed(k)
            return self._rejected(env, entry_id, err)
        size = int(content)

        replaced = None
        if k in self._transfers:
            logger.warning("file_start for %s replaces a transfer still in progress", k)
            old = self._transfers[k]
            replaced = self._fail(k, TransferError(
                f"{old.filename}: replaced by a new transfer after {old.received_size}/{old.declared_size} bytes",
                old.filename))
        self._failed.pop(k, None)
        self._transfers[k] = IncomingFile(
            sender=env.sender, filename=filename, entry_id=entry_id, declared_size=size)
        logger.info("receiving %s from %s (%d bytes)", filename, env.sender, size)
        update = self._update(self._transfers[k], TransferState.RECEIVING)
        if replaced is not None:
            update = dataclasses.replace(update, replaced=replaced)
        return update

    async def add_chunk(self, env: Envelope, config: Optional[CipherConfig],
                        key: Optional[bytes]) -> TransferUpdate:
        k = self.transfer_key(env)
        t = self._transfers.get(k)
        if t is None:
            return self._unknown(env, k)

        if not env.iv:
            return self._fail(k, MissingIV(t.filename))
        if config is None or key is None:
            return self._fail(k, CipherError("room settings not received yet"))
        if not isinstance(env.content, str):
            return self._fail(k, TransferError(f"chunk for {t.filename} has no ciphertext", t.filename))

        try:
            text = await self.port.decrypt(config, key, env.content, env.iv)
            data = base64.b64decode(text, validate=True)
        except CipherError as e:
            return self._fail(k, e)
        except (binascii.Error, ValueError) as e:
            return self._fail(k, TransferError(f"chunk for {t.filename} is not valid base64: {e}", t.filename))

        t.chunks.append(data)
        t.received_size += len(data)
        if t.declared_size > 0:
            pct = min(percent(t.received_size, t.declared_size), self.RECEIVING_CAP)
            t.progress = max(t.progress, pct)
        return self._update(t, TransferState.RECEIVING)

    def finish(self, env: Envelope) -> TransferUpdate:
        k = self.transfer_key(env)
        t = self._transfers.get(k)
        if t is None:
            return self._unknown(env, k)

        if t.received_size != t.declared_size:
            return self._fail(k, SizeMismatch(t.filename, t.received_size, t.declared_size))

        del self._transfers[k]
        t.progress = 100.0
        data = b"".join(t.chunks)
        logger.info("received %s (%d bytes) in %.2fs", t.filename, len(data), time.time() - t.started_at)
        return self._update(t, TransferState.COMPLETE, data=data)

    def abandon_all(self, reason: str = "session closed") -> List[TransferUpdate]:
        """Fail every transfer still in progress (used on session teardown)."""
        out = []
        for k in list(self._transfers):
            t = self._transfers[k]
            out.append(self._fail(k, TransferError(f"{t.filename}: {reason}", t.filename)))
        return out

    # --- helpers -----------------------------------------------------------

    def _fail(self, k: str, error: ChatError) -> TransferUpdate:
        t = self._transfers.pop(k)
        self._remember_failed(k)
        logger.warning("transfer %s failed: %s", k, error)
        return self._update(t, TransferState.FAILED, error=error)

    def _remember_failed(self, k: str) -> None:
        self._failed[k] = None
        self._failed.move_to_end(k)
        while len(self._failed) > self.FAILED_MEMORY:
            self._failed.popitem(last=False)

    def _unknown(self, env: Envelope, k: str) -> TransferUpdate:
        error = UnknownTransfer(env.filename or k)
        if k in self._failed:
            logger.debug("dropping %s for failed transfer %s", env.message_type, k)
            return dataclasses.replace(
                self._rejected(env, env.transfer_id or k, error, log=False), repeat=True)
        self._remember_failed(k)
        return self._rejected(env, env.transfer_id or k, error)

    def _rejected(self, env: Envelope, entry_id: str, error: ChatError, log: bool = True) -> TransferUpdate:
        if log:
            logger.warning("ignoring %s from %s: %s", env.message_type, env.sender, error)
        return TransferUpdate(entry_id=entry_id, filename=env.filename or "", sender=env.sender,
                              state=TransferState.FAILED, progress=0.0, received=0, expected=0,
                              error=error)

    @staticmethod
    def _update(t: IncomingFile, state: TransferState, data: Optional[bytes] = None,
                error: Optional[ChatError] = None) -> TransferUpdate:
        return TransferUpdate(entry_id=t.entry_id, filename=t.filename, sender=t.sender,
                              state=state, progress=t.progress, received=t.received_size,
                              expected=t.declared_size, data=data, error=error)
