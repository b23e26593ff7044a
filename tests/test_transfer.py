"""
test_transfer.py
----------------
Chunked file transfer: sender framing and pacing, receiver reassembly,
progress reporting and the failure paths (size mismatch, missing IV,
unknown transfer, aborted send).
"""

import base64
import json

import pytest

from cipherroom.envelope import decode, encode, file_chunk_envelope, file_end_envelope, file_start_envelope
from cipherroom.errors import CipherError, MissingIV, SizeMismatch, TransferAborted, TransferError, UnknownTransfer
from cipherroom.keys import CipherPort, derive_key
from cipherroom.pacing import NoPacing
from cipherroom.transfer import FileTransferReceiver, FileTransferSender, TransferState

from conftest import RC5_CBC, TWOFISH_CTR, CountingPacer, Recorder

CHUNK = 64
MIB = 1024 * 1024


async def send_and_receive(port, payload, chunk_size=CHUNK, config=RC5_CBC, filename="f.bin"):
    key = derive_key("pw", config.algorithm)
    rec = Recorder()
    sender = FileTransferSender(port, rec, chunk_size=chunk_size, pacer=NoPacing())
    await sender.send_file("alice", config, key, filename, payload)
    receiver = FileTransferReceiver(port)
    updates = [await receiver.handle(decode(f), config, key) for f in rec.frames]
    return rec, receiver, updates

# -------------------
# Sender
# -------------------

@pytest.mark.asyncio
async def test_sender_frames_start_chunks_end(fake_port):
    rec = Recorder()
    sender = FileTransferSender(fake_port, rec, chunk_size=CHUNK, pacer=NoPacing())
    tid = await sender.send_file("alice", RC5_CBC, b"k" * 16, "notes.txt", b"x" * (2 * CHUNK + 5))
    frames = rec.json()
    assert [f["message_type"] for f in frames] == ["file_start", "file_chunk", "file_chunk", "file_chunk", "file_end"]
    assert frames[0]["content"] == str(2 * CHUNK + 5)
    assert frames[-1]["content"] == "notes.txt"
    assert all(f["transfer_id"] == tid for f in frames)
    assert tid == f"alice:{frames[0]['sent_at']}:notes.txt"
    assert all("iv" in f for f in frames[1:-1])
    assert "iv" not in frames[0] and "iv" not in frames[-1]


# 2.5 MiB with 1 MiB chunks -> three chunks of 1, 1 and 0.5 MiB
@pytest.mark.asyncio
async def test_sender_default_chunking_of_two_and_a_half_mib(fake_port):
    rec = Recorder()
    sender = FileTransferSender(fake_port, rec, chunk_size=MIB, pacer=NoPacing())
    await sender.send_file("alice", RC5_CBC, b"k" * 16, "big.bin", b"\x01" * (5 * MIB // 2))
    chunks = [f for f in rec.json() if f["message_type"] == "file_chunk"]
    sizes = [len(base64.b64decode(base64.b64decode(c["content"]))) for c in chunks]
    assert sizes == [MIB, MIB, MIB // 2]


@pytest.mark.asyncio
async def test_sender_progress_and_empty_payload(fake_port):
    seen = []
    sender = FileTransferSender(fake_port, Recorder(), chunk_size=CHUNK, pacer=NoPacing())
    await sender.send_file("a", RC5_CBC, b"k" * 16, "f", b"z" * (3 * CHUNK),
                           on_progress=lambda s, t, p: seen.append(p))
    assert seen == pytest.approx([100 / 3, 200 / 3, 100.0])

    seen.clear()
    rec = Recorder()
    sender = FileTransferSender(fake_port, rec, chunk_size=CHUNK, pacer=NoPacing())
    await sender.send_file("a", RC5_CBC, b"k" * 16, "empty", b"", on_progress=lambda s, t, p: seen.append(p))
    assert seen == [100.0]
    assert [f["message_type"] for f in rec.json()] == ["file_start", "file_end"]


@pytest.mark.asyncio
async def test_sender_waits_on_pacer_between_chunks(fake_port):
    pacer = CountingPacer()
    sender = FileTransferSender(fake_port, Recorder(), chunk_size=CHUNK, pacer=pacer)
    await sender.send_file("a", RC5_CBC, b"k" * 16, "f", b"z" * (4 * CHUNK))
    assert len(pacer.calls) == 3


@pytest.mark.asyncio
async def test_sender_uses_fresh_iv_per_chunk():
    rec, _, _ = await send_and_receive(CipherPort(), b"q" * (5 * CHUNK))
    ivs = [f["iv"] for f in rec.json() if f["message_type"] == "file_chunk"]
    assert len(ivs) == 5
    assert len(set(ivs)) == 5


@pytest.mark.asyncio
async def test_sender_aborts_when_transport_fails(fake_port):
    frames = []

    async def flaky_send(frame):
        if len(frames) == 2:
            raise ConnectionError("socket gone")
        frames.append(frame)

    sender = FileTransferSender(fake_port, flaky_send, chunk_size=CHUNK, pacer=NoPacing())
    with pytest.raises(TransferAborted) as exc:
        await sender.send_file("a", RC5_CBC, b"k" * 16, "doc.pdf", b"z" * (3 * CHUNK))
    assert exc.value.filename == "doc.pdf"
    assert exc.value.sent == CHUNK
    assert exc.value.total == 3 * CHUNK
    assert isinstance(exc.value.cause, ConnectionError)


def test_sender_rejects_bad_chunk_size(fake_port):
    with pytest.raises(ValueError):
        FileTransferSender(fake_port, Recorder(), chunk_size=0)

# -------------------
# Receiver
# -------------------

# Reassembly across chunk boundaries with the real cipher stack
@pytest.mark.asyncio
@pytest.mark.parametrize("size", [0, 1, CHUNK, CHUNK + 1, 3 * CHUNK + 17])
async def test_receiver_reassembles_sizes(size):
    payload = bytes((i * 7) % 256 for i in range(size))
    _, receiver, updates = await send_and_receive(CipherPort(), payload)
    final = updates[-1]
    assert final.state is TransferState.COMPLETE
    assert final.data == payload
    assert final.progress == 100.0
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_receiver_with_twofish_ctr():
    payload = b"\x00binary\xffdata\x00" * 11
    _, _, updates = await send_and_receive(CipherPort(), payload, config=TWOFISH_CTR)
    assert updates[-1].data == payload


# Progress never decreases and reaches 100 only on completion
@pytest.mark.asyncio
async def test_receiver_progress_monotonic(fake_port):
    _, _, updates = await send_and_receive(fake_port, b"p" * (10 * CHUNK))
    progress = [u.progress for u in updates]
    assert progress == sorted(progress)
    assert all(p < 100 for p in progress[:-1])
    assert progress[-1] == 100.0
    assert [u.state for u in updates[:-1]] == [TransferState.RECEIVING] * (len(updates) - 1)


@pytest.mark.asyncio
async def test_early_file_end_is_size_mismatch(fake_port):
    rec = Recorder()
    sender = FileTransferSender(fake_port, rec, chunk_size=CHUNK, pacer=NoPacing())
    await sender.send_file("alice", RC5_CBC, b"k" * 16, "f.bin", b"m" * (3 * CHUNK))
    frames = [decode(f) for f in rec.frames]
    receiver = FileTransferReceiver(fake_port)
    await receiver.handle(frames[0], RC5_CBC, b"k" * 16)
    await receiver.handle(frames[1], RC5_CBC, b"k" * 16)
    update = await receiver.handle(frames[-1], RC5_CBC, b"k" * 16)
    assert update.state is TransferState.FAILED
    assert isinstance(update.error, SizeMismatch)
    assert update.error.received == CHUNK
    assert update.error.expected == 3 * CHUNK
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_missing_iv_fails_only_that_transfer(fake_port):
    receiver = FileTransferReceiver(fake_port)
    receiver.start(file_start_envelope("alice", "a.txt", 4, "t-a"))
    receiver.start(file_start_envelope("alice", "b.txt", 4, "t-b"))
    chunk = decode(encode(file_chunk_envelope("alice", "a.txt", "Q1Q=", "", "t-a")))
    update = await receiver.handle(chunk, RC5_CBC, b"k" * 16)
    assert isinstance(update.error, MissingIV)
    assert "t-a" not in receiver
    assert "t-b" in receiver
    assert receiver.get("t-b").received_size == 0


@pytest.mark.asyncio
async def test_chunk_for_unknown_transfer(fake_port):
    receiver = FileTransferReceiver(fake_port)
    receiver.start(file_start_envelope("alice", "a.txt", 4, "t-a"))
    stray = file_chunk_envelope("bob", "zzz.txt", "Q1Q=", "AAAAAAAAAAA=", "t-z")
    update = await receiver.handle(stray, RC5_CBC, b"k" * 16)
    assert update.state is TransferState.FAILED
    assert isinstance(update.error, UnknownTransfer)
    assert len(receiver) == 1
    end = await receiver.handle(file_end_envelope("bob", "zzz.txt", "t-z"), RC5_CBC, b"k" * 16)
    assert isinstance(end.error, UnknownTransfer)


@pytest.mark.asyncio
async def test_decrypt_failure_removes_transfer():
    port = CipherPort()
    key = derive_key("pw", RC5_CBC.algorithm)
    receiver = FileTransferReceiver(port)
    receiver.start(file_start_envelope("alice", "a.txt", 4, "t-a"))
    # 9 bytes of ciphertext is never block aligned
    bad = file_chunk_envelope("alice", "a.txt", base64.b64encode(b"123456789").decode(),
                              base64.b64encode(bytes(8)).decode(), "t-a")
    update = await receiver.handle(bad, RC5_CBC, key)
    assert isinstance(update.error, CipherError)
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_chunk_before_room_settings_fails(fake_port):
    receiver = FileTransferReceiver(fake_port)
    receiver.start(file_start_envelope("alice", "a.txt", 4, "t-a"))
    chunk = file_chunk_envelope("alice", "a.txt", "Q1Q=", "AAAAAAAAAAA=", "t-a")
    update = await receiver.handle(chunk, None, None)
    assert isinstance(update.error, CipherError)
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_transfer_falls_back_to_filename_key(fake_port):
    receiver = FileTransferReceiver(fake_port)
    start = decode(json.dumps({"from": "alice", "sent_at": "2024-01-01T00:00:00Z",
                               "message_type": "file_start", "filename": "legacy.txt", "content": "3"}))
    receiver.start(start)
    assert "legacy.txt" in receiver
    text = base64.b64encode(base64.b64encode(b"abc")).decode()
    chunk = decode(json.dumps({"from": "alice", "message_type": "file_chunk", "filename": "legacy.txt",
                               "content": text, "iv": "AAAAAAAAAAA="}))
    await receiver.handle(chunk, RC5_CBC, b"k" * 16)
    end = decode(json.dumps({"from": "alice", "message_type": "file_end", "filename": "legacy.txt",
                             "content": "legacy.txt"}))
    update = await receiver.handle(end, RC5_CBC, b"k" * 16)
    assert update.state is TransferState.COMPLETE
    assert update.data == b"abc"
    assert update.entry_id == "alice:2024-01-01T00:00:00Z:legacy.txt"


def test_bad_declared_size_is_rejected(fake_port):
    receiver = FileTransferReceiver(fake_port)
    update = receiver.start(decode(json.dumps({"from": "alice", "message_type": "file_start",
                                               "filename": "a.txt", "content": "lots"})))
    assert update.state is TransferState.FAILED
    assert isinstance(update.error, TransferError)
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_abandon_all_clears_in_flight(fake_port):
    receiver = FileTransferReceiver(fake_port)
    receiver.start(file_start_envelope("alice", "a.txt", 10, "t-a"))
    receiver.start(file_start_envelope("bob", "b.txt", 10, "t-b"))
    updates = receiver.abandon_all()
    assert {u.filename for u in updates} == {"a.txt", "b.txt"}
    assert all(u.state is TransferState.FAILED for u in updates)
    assert len(receiver) == 0


@pytest.mark.parametrize("content", ["1_000", "+5", "-3", " 7", "٣", "", 12])
def test_declared_size_must_be_ascii_digits(fake_port, content):
    receiver = FileTransferReceiver(fake_port)
    update = receiver.start(decode(json.dumps({"from": "alice", "message_type": "file_start",
                                               "filename": "a.txt", "content": content})))
    assert update.state is TransferState.FAILED
    assert len(receiver) == 0


@pytest.mark.asyncio
async def test_frames_after_a_failure_are_reported_once(fake_port):
    receiver = FileTransferReceiver(fake_port)
    receiver.start(file_start_envelope("alice", "a.txt", 300, "t-a"))
    no_iv = file_chunk_envelope("alice", "a.txt", "Q1Q=", "", "t-a")
    first = await receiver.handle(no_iv, RC5_CBC, b"k" * 16)
    assert isinstance(first.error, MissingIV) and not first.repeat

    rest = [await receiver.handle(file_chunk_envelope("alice", "a.txt", "Q1Q=", "AAAAAAAAAAA=", "t-a"),
                                  RC5_CBC, b"k" * 16) for _ in range(3)]
    rest.append(await receiver.handle(file_end_envelope("alice", "a.txt", "t-a"), RC5_CBC, b"k" * 16))
    assert all(u.repeat and isinstance(u.error, UnknownTransfer) for u in rest)

    # a fresh start under the same key is tracked normally again
    again = receiver.start(file_start_envelope("alice", "a.txt", 3, "t-a"))
    assert again.state is TransferState.RECEIVING
    assert "t-a" in receiver


@pytest.mark.asyncio
async def test_second_start_fails_the_replaced_transfer(fake_port):
    receiver = FileTransferReceiver(fake_port)
    first = receiver.start(decode(json.dumps({"from": "alice", "sent_at": "t1", "message_type": "file_start",
                                              "filename": "a.txt", "content": "10"})))
    second = receiver.start(decode(json.dumps({"from": "alice", "sent_at": "t2", "message_type": "file_start",
                                               "filename": "a.txt", "content": "20"})))
    assert second.state is TransferState.RECEIVING
    assert second.expected == 20
    assert second.replaced is not None
    assert second.replaced.entry_id == first.entry_id
    assert second.replaced.state is TransferState.FAILED
    assert "replaced" in str(second.replaced.error)
    assert len(receiver) == 1
