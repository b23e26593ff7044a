"""
errors.py
----------
Error taxonomy shared by the client, the transfer state machines and the
cipher boundary. Anything that affects a single message or a single file
transfer derives from ChatError and is recovered by the session; only
transport closure ends a session.
"""


class ChatError(Exception):
    """Base class for recoverable protocol errors."""


class CipherError(ChatError):
    """Bad key material, bad IV, misaligned ciphertext or broken padding."""


class DecodeError(ChatError):
    """A frame could not be parsed as an envelope."""


class TransportError(ChatError):
    """The channel failed or was closed."""


class TransferError(ChatError):
    """A single file transfer could not proceed."""

    def __init__(self, message: str, filename: str | None = None):
        super().__init__(message)
        self.filename = filename


class MissingIV(TransferError):
    def __init__(self, filename: str):
        super().__init__(f"chunk for {filename} has no IV", filename)


class SizeMismatch(TransferError):
    def __init__(self, filename: str, received: int, expected: int):
        super().__init__(
            f"size mismatch for {filename}: received {received} of {expected} bytes",
            filename,
        )
        self.received = received
        self.expected = expected


class UnknownTransfer(TransferError):
    def __init__(self, filename: str):
        super().__init__(f"no transfer in progress for {filename}", filename)


class TransferAborted(TransferError):
    """Outbound transfer stopped part-way; already-sent chunks are not recalled."""

    def __init__(self, filename: str, sent: int, total: int, cause: BaseException):
        super().__init__(
            f"sending {filename} failed after {sent}/{total} bytes: {cause}",
            filename,
        )
        self.sent = sent
        self.total = total
        self.cause = cause
