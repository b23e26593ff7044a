"""
client.py
----------
Command-line client for encrypted chat rooms.

Connects to a relay server, adopts the room cipher announced in
room_settings, and then:
- sends every plain input line as an encrypted text message
- /sendfile <path>   sends a file in encrypted chunks (in the background)
- /settings          prints the active room cipher
- /quit              leaves the room

Incoming text is decrypted and printed; incoming files are saved to the
downloads directory.
"""

import argparse
import asyncio
import logging
import os
from urllib.parse import quote, urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import config as cfg
from .errors import ChatError, TransportError
from .session import RoomSession
from .transcript import ConsoleTranscript, Transcript

logger = logging.getLogger(__name__)


def room_url(server_url: str, room: str, password: str, username: str) -> str:
    """ws://host:port/ws/{room}?room_name=&room_password=&username="""
    query = urlencode({"room_name": room, "room_password": password, "username": username})
    return f"{server_url.rstrip('/')}/ws/{quote(room, safe='')}?{query}"

# ---------------------------------------------------------------------------
# Main async client function
# ---------------------------------------------------------------------------

async def run_client(username: str, room: str, password: str,
                     server_url: str = cfg.DEFAULT_SERVER_URL,
                     display: Transcript | None = None,
                     chunk_size: int = cfg.CHUNK_SIZE, pacer=None) -> RoomSession:
    """
    Join one room and run the input and receive loops until the user quits
    or the server goes away. Returns the finished session.
    """
    display = display if display is not None else ConsoleTranscript()
    url = room_url(server_url, room, password, username)

    async with websockets.connect(url, ping_interval=cfg.PING_INTERVAL,
                                  ping_timeout=cfg.PING_TIMEOUT,
                                  max_size=cfg.MAX_FRAME_SIZE) as ws:

        async def send(frame: str) -> None:
            try:
                await ws.send(frame)
            except ConnectionClosed as e:
                raise TransportError(f"connection closed: {e}") from e

        session = RoomSession(username, password, send, display=display,
                              chunk_size=chunk_size, pacer=pacer)
        session.on_open(room)
        disconnected = asyncio.Event()

        # -------------------------------------------------------------------
        # Outgoing: user input -> session
        # -------------------------------------------------------------------
        async def sender():
            loop = asyncio.get_running_loop()
            while not disconnected.is_set():
                try:
                    line = await loop.run_in_executor(None, input)
                except (EOFError, KeyboardInterrupt):
                    break
                if disconnected.is_set():
                    break
                cmd = line.strip()
                if not cmd:
                    continue

                if cmd == "/quit":
                    break

                if cmd == "/settings":
                    cur = session.config
                    print(f"[settings] {cur}" if cur else "[settings] waiting for room settings")
                    continue

                if cmd.startswith("/sendfile"):
                    path = cmd[len("/sendfile"):].strip()
                    if not path:
                        print("usage: /sendfile <path>")
                        continue
                    if not os.path.isfile(path):
                        print(f"file not found: {path}")
                        continue
                    session.start_file(path)
                    continue

                try:
                    await session.send_text(line)
                except ChatError as e:
                    print(f"[error] {e}")

            # let background uploads finish before leaving
            await session.drain()
            await ws.close(code=1000, reason="Client requested")

        # -------------------------------------------------------------------
        # Incoming: frames -> session, in arrival order
        # -------------------------------------------------------------------
        async def receiver():
            reason = ""
            try:
                async for raw in ws:
                    await session.dispatch(raw)
            except ConnectionClosed as e:
                reason = str(e)
                session.on_error(e)
            finally:
                disconnected.set()
            session.on_close(reason)

        try:
            await asyncio.gather(sender(), receiver())
        finally:
            await session.close()
    return session

# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Encrypted chat room client")
    parser.add_argument("--user", required=True, help="Display name in the room")
    parser.add_argument("--room", required=True, help="Room to join")
    parser.add_argument("--password", required=True, help="Room password (also the key material)")
    parser.add_argument("--server", default=cfg.DEFAULT_SERVER_URL,
                        help="Server WebSocket URL (e.g., ws://127.0.0.1:8765)")
    parser.add_argument("--downloads", default=cfg.DOWNLOADS_DIR, help="Where received files are saved")
    parser.add_argument("--log-level", default=None, help="Logging level (default from CIPHERROOM_LOG_LEVEL)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    cfg.setup_logging(args.log_level)
    try:
        asyncio.run(run_client(args.user, args.room, args.password, args.server,
                               display=ConsoleTranscript(args.downloads)))
    except KeyboardInterrupt:
        print("\nDisconnected. Goodbye!")
    except (OSError, WebSocketException) as e:
        print(f"Could not connect to {args.server}: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
