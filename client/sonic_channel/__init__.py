"""sonic_channel -- Python client library for the Sonic search backend.

Provides SearchChannel, IngestChannel and ControlChannel for talking to a
Sonic server over its line-oriented channel protocol, the SonicStream
they are built on, and an exception hierarchy for connection, I/O and
protocol failures.

Usage::

    from sonic_channel import SearchChannel

    with SearchChannel.start("localhost:1491", "SecretPassword") as search:
        print(search.query("messages", "user:1", "beef"))
"""

from .channels import ControlChannel, IngestChannel, SearchChannel, SonicChannel
from .commands import StartCommand, StartResponse, StreamCommand
from .modes import ChannelMode, enabled_modes
from .protocol import (
    ConnectToServerError, ErrorKind, ReadStreamError, RunCommandError,
    ServerError, SonicError, WriteToStreamError, WrongResponseError,
)
from .stream import SonicStream

__version__ = "0.1.0"

__all__ = [
    "ChannelMode",
    "ConnectToServerError",
    "ControlChannel",
    "ErrorKind",
    "IngestChannel",
    "ReadStreamError",
    "RunCommandError",
    "SearchChannel",
    "ServerError",
    "SonicChannel",
    "SonicError",
    "SonicStream",
    "StartCommand",
    "StartResponse",
    "StreamCommand",
    "WriteToStreamError",
    "WrongResponseError",
    "enabled_modes",
]
