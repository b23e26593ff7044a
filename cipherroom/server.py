"""
server.py
----------
Relay server for encrypted chat rooms.

Clients connect to ws://host:port/ws/{room}?room_name=&room_password=&username=.
On join the server sends the room's cipher settings and tells the other
members who arrived; afterwards every frame from a member is relayed to the
others. The server never holds keys and never decrypts anything.
"""

import argparse
import asyncio
import json
import logging
from typing import Optional, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

import websockets
import yaml
from websockets.exceptions import ConnectionClosed

from . import config as cfg
from .envelope import MessageType, encode, load_object, notice_envelope, now_iso, settings_envelope
from .errors import DecodeError
from .rooms import Room, RoomError, RoomRegistry

logger = logging.getLogger(__name__)

# message types that carry an IV; it is dropped from everything else
IV_TYPES = (MessageType.TEXT.value, MessageType.FILE_CHUNK.value)


def is_open(ws) -> bool:
    """Return True if websocket connection is alive across websocket versions."""
    if not ws:
        return False
    # websockets >= 13 (ServerConnection)
    state = getattr(ws, "state", None)
    if state is not None:
        return getattr(state, "name", "").upper() == "OPEN"
    # legacy protocol
    if hasattr(ws, "open"):
        return bool(ws.open)
    if hasattr(ws, "closed"):
        return not ws.closed
    return False


def request_path(ws) -> str:
    """Request path with query string, across websocket versions."""
    request = getattr(ws, "request", None)
    if request is not None and getattr(request, "path", None):
        return request.path
    return getattr(ws, "path", "") or ""


def parse_join(path: str) -> Tuple[str, str, str]:
    """
    Pull (room, password, username) out of a join URL path.
    room_name wins over the /ws/{room} segment. Raises RoomError when a
    value is missing.
    """
    parts = urlsplit(path)
    query = parse_qs(parts.query)

    def first(k: str) -> str:
        return (query.get(k) or [""])[0]

    room = first("room_name")
    if not room and parts.path.startswith("/ws/"):
        room = unquote(parts.path[len("/ws/"):]).strip("/")
    password = first("room_password")
    username = first("username")
    if not room or not password or not username:
        raise RoomError("room name, password and username are required")
    return room, password, username


def normalize_frame(raw, username: str) -> str:
    """
    Fill in what a client left out (sender, timestamp, type) and drop an IV
    from message types that never carry one. Frames that are not JSON objects
    are passed through untouched.
    """
    try:
        msg = load_object(raw)
    except DecodeError:
        return raw
    if not msg.get("from"):
        msg["from"] = username
    if not msg.get("sent_at"):
        msg["sent_at"] = now_iso()
    if not msg.get("message_type"):
        msg["message_type"] = MessageType.TEXT.value
    if msg["message_type"] not in IV_TYPES:
        msg.pop("iv", None)
    return json.dumps(msg, ensure_ascii=False)


class RelayServer:
    def __init__(self, registry: RoomRegistry):
        self.registry = registry

    async def _send(self, ws, frame: str, username: str) -> None:
        if not is_open(ws):
            return
        try:
            await ws.send(frame)
        except ConnectionClosed as e:
            logger.info("could not deliver to %s: %s", username, e)

    async def broadcast(self, room: Room, frame: str, exclude: Optional[str] = None) -> None:
        for user, conn in room.others(exclude or ""):
            await self._send(conn, frame, user)

    async def handler(self, ws) -> None:
        """Serve one member connection for its whole lifetime."""
        try:
            room_name, password, username = parse_join(request_path(ws))
            room = self.registry.join(room_name, password, username, ws)
        except RoomError as e:
            logger.warning("rejected join: %s", e)
            await ws.close(code=1008, reason=str(e)[:120])
            return

        logger.info("%s joined %s (%d/%d)", username, room.name, len(room.members), room.capacity)
        try:
            await self._send(ws, encode(settings_envelope(room.settings.to_wire())), username)
            await self.broadcast(room, encode(notice_envelope(MessageType.CLIENT_CONNECTED, username)),
                                 exclude=username)

            async for raw in ws:
                await self.broadcast(room, normalize_frame(raw, username), exclude=username)
        except ConnectionClosed as e:
            logger.info("%s dropped: %s", username, e)
        finally:
            self.registry.leave(room.name, username)
            logger.info("%s left %s", username, room.name)
            await self.broadcast(room, encode(notice_envelope(MessageType.CLIENT_DISCONNECTED, username)),
                                 exclude=username)

    def serve(self, host: str = cfg.DEFAULT_HOST, port: int = cfg.DEFAULT_PORT):
        """Return the websockets server (use as an async context manager)."""
        return websockets.serve(self.handler, host, port,
                                ping_interval=cfg.PING_INTERVAL,
                                ping_timeout=cfg.PING_TIMEOUT,
                                max_size=cfg.MAX_FRAME_SIZE)


async def main_loop(registry: RoomRegistry, host: str, port: int) -> None:
    relay = RelayServer(registry)
    print(f"Listening on ws://{host}:{port} with {len(registry)} room(s)")
    async with relay.serve(host, port):
        await asyncio.Future()

# ------------------------------------------------------------
# Program entry point
# ------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Encrypted chat relay server")
    parser.add_argument("--host", default=cfg.DEFAULT_HOST, help="Hostname or IP to bind")
    parser.add_argument("--port", default=cfg.DEFAULT_PORT, type=int, help="TCP port to listen on")
    parser.add_argument("--rooms", default=cfg.ROOMS_FILE, help="YAML file with room definitions")
    parser.add_argument("--log-level", default=None, help="Logging level (default from CIPHERROOM_LOG_LEVEL)")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    cfg.setup_logging(args.log_level)
    try:
        registry = RoomRegistry.from_yaml(args.rooms)
    except (OSError, yaml.YAMLError, RoomError) as e:
        print(f"Could not load rooms from {args.rooms}: {e}")
        return 1
    try:
        asyncio.run(main_loop(registry, args.host, args.port))
    except KeyboardInterrupt:
        print("\nServer shutting down gracefully...")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
