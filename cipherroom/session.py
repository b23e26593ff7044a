"""
session.py
----------
RoomSession: one participant's view of a room.

Inbound frames are dispatched one at a time in arrival order. Outbound text
and files go through the same CipherPort under the room's (config, key),
which is replaced as a single tuple whenever room_settings arrives.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional, Set, Tuple

from . import config as cfg
from .envelope import NOTICE_TYPES, Envelope, MessageType, decode, encode, text_envelope
from .errors import ChatError, CipherError, TransferAborted
from .keys import CipherPort, derive_key
from .settings import CipherConfig
from .transcript import EntryKind, Transcript, TranscriptEntry, next_entry_id
from .transfer import FileTransferReceiver, FileTransferSender, TransferState, TransferUpdate

logger = logging.getLogger(__name__)

UNREADABLE = "[unable to decrypt message]"

SendFn = Callable[[str], Awaitable[None]]


class RoomSession:
    def __init__(self, username: str, password: str, send: SendFn,
                 display: Optional[Transcript] = None, port: Optional[CipherPort] = None,
                 chunk_size: int = cfg.CHUNK_SIZE, pacer=None):
        self.username = username
        self.password = password
        self.send = send
        self.display = display if display is not None else Transcript()
        self.port = port or CipherPort()
        self.receiver = FileTransferReceiver(self.port)
        self.sender = FileTransferSender(self.port, send, chunk_size=chunk_size, pacer=pacer)
        self._cipher: Optional[Tuple[CipherConfig, bytes]] = None
        self._tasks: Set[asyncio.Task] = set()
        self.closed = False

    # ------------------------------------------------------------------
    # Cipher state
    # ------------------------------------------------------------------

    @property
    def config(self) -> Optional[CipherConfig]:
        return self._cipher[0] if self._cipher else None

    def adopt(self, config: CipherConfig) -> None:
        """Switch to a room config; the key is re-derived for its algorithm."""
        key = derive_key(self.password, config.algorithm)
        self._cipher = (config, key)
        logger.info("room cipher is now %s", config)

    def _require_cipher(self) -> Tuple[CipherConfig, bytes]:
        current = self._cipher
        if current is None:
            raise CipherError("room settings not received yet")
        return current

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def dispatch(self, raw) -> Envelope:
        env = decode(raw)
        await self.handle(env)
        return env

    async def handle(self, env: Envelope) -> None:
        if env.raw:
            self._show(EntryKind.TEXT, env.sender, str(env.content), env.sent_at)
            return

        kind = env.kind
        if kind is MessageType.ROOM_SETTINGS:
            self._on_settings(env)
        elif kind is MessageType.TEXT:
            await self._on_text(env)
        elif env.is_file:
            current = self._cipher
            config, key = current if current else (None, None)
            self._on_transfer(await self.receiver.handle(env, config, key))
        elif kind in NOTICE_TYPES:
            verb = "joined" if kind is MessageType.CLIENT_CONNECTED else "left"
            self.notice(f"{env.content} {verb} the room")
        else:
            logger.debug("unknown message type %r from %s", env.message_type, env.sender)
            self._show(EntryKind.TEXT, env.sender, str(env.content), env.sent_at)

    def _on_settings(self, env: Envelope) -> None:
        try:
            config = CipherConfig.from_wire(env.content)
            self.adopt(config)
        except (ValueError, ChatError) as e:
            logger.warning("rejected room settings %r: %s", env.content, e)
            self.error(f"invalid room settings: {e}")
            return
        self.notice(f"room cipher: {config}")

    async def _on_text(self, env: Envelope) -> None:
        current = self._cipher
        if current is None or not env.iv or not isinstance(env.content, str):
            text = UNREADABLE
        else:
            config, key = current
            try:
                text = await self.port.decrypt(config, key, env.content, env.iv)
            except CipherError as e:
                logger.warning("could not decrypt message from %s: %s", env.sender, e)
                text = UNREADABLE
        self._show(EntryKind.TEXT, env.sender, text, env.sent_at)

    def _on_transfer(self, update: TransferUpdate) -> None:
        if update.repeat:
            return
        if update.replaced is not None:
            self._on_transfer(update.replaced)

        eid = update.entry_id
        if update.state is TransferState.FAILED:
            if eid in self.display:
                self.display.update(eid, state=update.state.value)
            self.error(str(update.error))
            return

        if eid not in self.display:
            self.display.show(TranscriptEntry(
                entry_id=eid, kind=EntryKind.FILE, sender=update.sender,
                text=update.filename, filename=update.filename,
                progress=update.progress, state=update.state.value))
        else:
            self.display.update(eid, progress=update.progress, state=update.state.value)

        if update.state is TransferState.COMPLETE:
            try:
                self.display.save_file(update.filename, update.data, update.sender)
            except OSError as e:
                logger.error("could not save %s: %s", update.filename, e)
                self.error(f"failed to save {update.filename}: {e}")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_text(self, text: str) -> Envelope:
        config, key = self._require_cipher()
        sealed = await self.port.encrypt(config, key, text)
        env = text_envelope(self.username, sealed.ciphertext, sealed.iv)
        await self.send(encode(env))
        self._show(EntryKind.TEXT, self.username, text, env.sent_at, local=True)
        return env

    async def send_file(self, filename: str, payload: bytes) -> Optional[str]:
        """Send a file; failures end up in the transcript. Returns the transfer id."""
        try:
            config, key = self._require_cipher()
        except CipherError as e:
            self.error(f"cannot send {filename}: {e}")
            return None

        eid = next_entry_id("upload")
        self.display.show(TranscriptEntry(
            entry_id=eid, kind=EntryKind.FILE, sender=self.username, text=filename,
            filename=filename, progress=0.0, state="sending", local=True))

        def progress(sent, total, pct):
            self.display.update(eid, progress=pct)

        try:
            transfer_id = await self.sender.send_file(
                self.username, config, key, filename, payload, on_progress=progress)
        except TransferAborted as e:
            self.display.update(eid, state=TransferState.FAILED.value)
            self.error(str(e))
            return None
        self.display.update(eid, progress=100.0, state=TransferState.COMPLETE.value)
        return transfer_id

    async def send_path(self, path: str) -> Optional[str]:
        try:
            with open(path, "rb") as f:
                payload = f.read()
        except OSError as e:
            self.error(f"cannot read {path}: {e}")
            return None
        return await self.send_file(os.path.basename(path), payload)

    def start_file(self, path: str) -> asyncio.Task:
        """Run send_path as a background task so input is not blocked."""
        task = asyncio.create_task(self.send_path(path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def on_open(self, room: str = "") -> None:
        self.notice(f"connected to room {room}".rstrip())

    def on_close(self, reason: str = "") -> None:
        self.notice(f"disconnected: {reason}" if reason else "disconnected")

    def on_error(self, exc: BaseException) -> None:
        logger.error("transport error: %s", exc)
        self.error(f"connection error: {exc}")

    async def drain(self) -> None:
        """Wait for outbound file tasks to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for update in self.receiver.abandon_all():
            self._on_transfer(update)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Transcript helpers
    # ------------------------------------------------------------------

    def notice(self, text: str) -> None:
        self._show(EntryKind.SYSTEM, "system", text)

    def error(self, text: str) -> None:
        self._show(EntryKind.ERROR, "system", text)

    def _show(self, kind: EntryKind, sender: str, text: str, sent_at: Optional[str] = None,
              local: bool = False) -> None:
        self.display.show(TranscriptEntry(
            entry_id=next_entry_id(kind.value), kind=kind, sender=sender, text=text,
            sent_at=sent_at, local=local))
