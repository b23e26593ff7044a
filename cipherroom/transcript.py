"""
transcript.py
-------------
Display side of a room session.

RoomSession only talks to the three methods of Transcript: show() appends an
entry, update() changes one in place (file progress), save_file() hands over
a completed download. Transcript keeps everything in memory; ConsoleTranscript
also prints each change and writes downloads to disk.
"""

import itertools
import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

from . import config as cfg

logger = logging.getLogger(__name__)


class EntryKind(str, Enum):
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"
    ERROR = "error"


@dataclass(frozen=True)
class TranscriptEntry:
    entry_id: str
    kind: EntryKind
    sender: str
    text: str
    sent_at: Optional[str] = None
    filename: Optional[str] = None
    progress: Optional[float] = None
    state: Optional[str] = None
    # True for our own messages echoed locally
    local: bool = False


_ids = itertools.count(1)


def next_entry_id(prefix: str = "entry") -> str:
    return f"{prefix}-{next(_ids)}"


class Transcript:
    """In-memory transcript; also the base for renderers."""

    def __init__(self):
        self.entries: List[TranscriptEntry] = []
        self._index: Dict[str, int] = {}
        self.saved: Dict[str, bytes] = {}

    def __len__(self):
        return len(self.entries)

    def __getitem__(self, entry_id: str) -> TranscriptEntry:
        return self.entries[self._index[entry_id]]

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._index

    def show(self, entry: TranscriptEntry) -> None:
        if entry.entry_id in self._index:
            # same id shown twice: treat as an update
            self.entries[self._index[entry.entry_id]] = entry
        else:
            self._index[entry.entry_id] = len(self.entries)
            self.entries.append(entry)
        self.render(entry, new=True)

    def update(self, entry_id: str, **changes) -> Optional[TranscriptEntry]:
        pos = self._index.get(entry_id)
        if pos is None:
            logger.debug("update for unknown entry %s", entry_id)
            return None
        entry = replace(self.entries[pos], **changes)
        self.entries[pos] = entry
        self.render(entry, new=False)
        return entry

    def save_file(self, filename: str, data: bytes, sender: str) -> Optional[str]:
        self.saved[filename] = data
        return None

    def texts(self, kind: Optional[EntryKind] = None) -> List[str]:
        return [e.text for e in self.entries if kind is None or e.kind is kind]

    def render(self, entry: TranscriptEntry, new: bool) -> None:
        pass


def unique_path(directory: str, filename: str) -> str:
    """Path in `directory` for `filename`, adding (1), (2)... to avoid overwrites."""
    outpath = os.path.join(directory, os.path.basename(filename) or "download.bin")
    base, ext = os.path.splitext(outpath)
    k = 1
    while os.path.exists(outpath):
        outpath = f"{base}({k}){ext}"
        k += 1
    return outpath


class ConsoleTranscript(Transcript):
    """Prints entries to stdout and writes finished downloads to DOWNLOADS_DIR."""

    def __init__(self, downloads_dir: str = cfg.DOWNLOADS_DIR):
        super().__init__()
        self.downloads_dir = downloads_dir

    def render(self, entry: TranscriptEntry, new: bool) -> None:
        if entry.kind is EntryKind.FILE:
            pct = entry.progress or 0.0
            line = f"[file] {entry.sender}: {entry.filename} {pct:5.1f}% {entry.state or ''}".rstrip()
            # progress updates overwrite the same console line
            if entry.state == "receiving" or entry.state == "sending":
                print(line, end="\r", flush=True)
            else:
                print(line)
        elif entry.kind is EntryKind.SYSTEM:
            print(f"[system] {entry.text}")
        elif entry.kind is EntryKind.ERROR:
            print(f"[error] {entry.text}")
        elif new:
            print(f"{entry.sender}: {entry.text}")

    def save_file(self, filename: str, data: bytes, sender: str) -> Optional[str]:
        """Write a download without overwriting. OSError goes to the caller."""
        os.makedirs(self.downloads_dir, exist_ok=True)
        outpath = unique_path(self.downloads_dir, filename)
        with open(outpath, "wb") as w:
            w.write(data)
        print(f"[recv] File saved: {outpath} ({len(data)} bytes) from {sender}")
        return outpath
