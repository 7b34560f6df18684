"""Exceptions raised by the pairing protocol and its collaborators."""


class SyncError(Exception):
    """Base class for all IDE Sync errors."""


class DiscoveryBindError(SyncError):
    """The well-known discovery port is already bound by another process."""

    def __init__(self, port: int, reason: str = "") -> None:
        self.port = port
        message = f"Discovery port {port} is already in use"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class SessionBindError(SyncError):
    """A session listener could not bind its assigned port."""

    def __init__(self, port: int, reason: str = "") -> None:
        self.port = port
        super().__init__(f"Cannot bind session port {port}: {reason}" if reason else f"Cannot bind session port {port}")


class HandshakeTimeout(SyncError):
    """The remote side did not complete a handshake step in time."""


class ProtocolError(SyncError):
    """A received payload is not a valid protocol message."""


class FileResolutionError(SyncError):
    """An inbound state references a file that cannot be opened."""

    def __init__(self, file_path: str, reason: str = "") -> None:
        self.file_path = file_path
        super().__init__(f"Cannot open {file_path}: {reason}" if reason else f"Cannot open {file_path}")
