"""Connection, handshake and generic command dispatch.

A :class:`SonicStream` owns one TCP socket to a Sonic server.  It is only
ever handed out after the full handshake::

    CONNECTED <sonic-server v1.4.0>              (server greeting)
    START search SecretPassword                  (client)
    STARTED search protocol(1) buffer(20000)     (server)

after which the negotiated mode, buffer size and protocol version are
fixed for the lifetime of the stream.  Every command, START included,
goes through :meth:`SonicStream.run_command`.

A stream is not thread-safe.  The protocol has no request ids, so only
one command may be in flight per stream; callers sharing a stream across
threads must serialize access themselves.  If a dispatch is interrupted
(timeout, KeyboardInterrupt) the stream may hold a partial response and
must be discarded.
"""

import logging
import socket
from typing import Any, Optional, Tuple, Union

from .commands import StartCommand, StreamCommand
from .modes import ChannelMode
from .protocol import (
    ConnectToServerError, ReadStreamError, RunCommandError, read_line,
    send_message,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 1491
DEFAULT_PROTOCOL_VERSION = 1
UNINITIALIZED_MODE_MAX_BUFFER_SIZE = 200
GREETING = "CONNECTED"

Address = Union[str, Tuple[str, int]]


def parse_address(addr: Address) -> Tuple[str, int]:
    """Normalize ``"host:port"``, ``"host"`` or ``(host, port)``.

    A bracketed IPv6 literal (``"[::1]:1491"``) is accepted.  Raises
    ValueError on a malformed port.
    """
    if isinstance(addr, tuple):
        host, port = addr
        return (host, int(port))

    if addr.startswith("["):
        host, _, rest = addr[1:].partition("]")
        port_str = rest[1:] if rest.startswith(":") else ""
    elif addr.count(":") == 1:
        host, _, port_str = addr.partition(":")
    else:
        host, port_str = addr, ""

    if not port_str:
        return (host, DEFAULT_PORT)
    try:
        return (host, int(port_str))
    except ValueError:
        raise ValueError("Invalid port in address: {!r}".format(addr))


def _is_error_line(line: str) -> bool:
    return line.startswith("ERR ") or line.rstrip("\r\n") == "ERR"


class SonicStream:
    """A channel to the Sonic search backend.

    Use :meth:`connect_with_start` to obtain one; the constructor only
    wraps an already connected socket.  Can be used as a context
    manager, which closes the socket on exit.
    """

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock  # type: Optional[socket.socket]
        self._mode = None  # type: Optional[ChannelMode]
        self._max_buffer_size = UNINITIALIZED_MODE_MAX_BUFFER_SIZE
        self._protocol_version = DEFAULT_PROTOCOL_VERSION
        self._greeting = None  # type: Optional[str]

    # -- Context manager ---------------------------------------------------

    def __enter__(self) -> "SonicStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore
        self.close()
        return None

    def __repr__(self) -> str:
        state = "closed" if self._sock is None else (
            "ready" if self._mode is not None else "connected")
        return "SonicStream(mode={}, buffer={}, protocol={}, {})".format(
            self._mode, self._max_buffer_size, self._protocol_version,
            state)

    # -- Negotiated state --------------------------------------------------

    @property
    def mode(self) -> Optional[ChannelMode]:
        """The started mode, or None before START succeeded."""
        return self._mode

    @property
    def max_buffer_size(self) -> int:
        """Buffer size announced by the server (200 before START)."""
        return self._max_buffer_size

    @property
    def protocol_version(self) -> int:
        """Protocol version announced by the server (1 before START)."""
        return self._protocol_version

    @property
    def greeting(self) -> Optional[str]:
        """The CONNECTED line received on connect, without terminator."""
        return self._greeting

    @property
    def closed(self) -> bool:
        return self._sock is None

    # -- Framed I/O --------------------------------------------------------

    def _write(self, command: StreamCommand) -> None:
        message = command.message()
        logger.debug("-> %r", command)
        send_message(self._sock, message, self._max_buffer_size)

    def _read(self, max_read_lines: int) -> str:
        """Read up to *max_read_lines* lines and return them concatenated.

        Sonic answers a failed command with a single ERR line and sends
        nothing after it, so an ERR line ends the response early instead
        of blocking for the remaining lines.  This is the one place the
        dispatcher looks at response content.
        """
        lines = []
        while len(lines) < max_read_lines:
            line = read_line(self._sock, self._max_buffer_size)
            lines.append(line)
            if _is_error_line(line):
                break
        message = "".join(lines)
        logger.debug("<- %r", message)
        return message

    def run_command(self, command: StreamCommand) -> Any:
        """Send *command*, read its response lines and decode them.

        Raises WriteToStreamError if the message cannot be sent (nothing
        is read in that case), ReadStreamError if a response line cannot
        be read (nothing is decoded), or whatever the command's decode
        step raises.  Reading stops early at a Sonic ERR line; see
        :meth:`_read`.
        """
        if self._sock is None:
            raise RunCommandError("Channel is closed")
        self._write(command)
        message = self._read(command.read_lines_count)
        return command.receive(message)

    # -- Handshake ---------------------------------------------------------

    @classmethod
    def _connect(cls, addr: Address,
                 timeout: Optional[float] = None) -> "SonicStream":
        """Open the TCP connection and validate the greeting.

        The returned stream has no mode yet.
        """
        host, port = parse_address(addr)
        # create_connection tries every address family the host resolves to
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise ConnectToServerError(
                "Could not connect to {}:{}: {}".format(host, port, e)
            ) from e

        stream = cls(sock)
        try:
            greeting = stream._read(1)
        except ReadStreamError as e:
            stream.close()
            raise ConnectToServerError(
                "No greeting from {}:{}: {}".format(host, port, e)) from e

        # The version announced in the greeting is not checked yet.
        if not greeting.startswith(GREETING):
            stream.close()
            raise ConnectToServerError(
                "Invalid greeting: {!r}".format(greeting))
        stream._greeting = greeting.rstrip("\r\n")
        return stream

    def start(self, mode: ChannelMode, password: str) -> None:
        """Send START and adopt the negotiated mode, buffer size and
        protocol version.

        Raises RunCommandError if this stream already has a mode or if
        *mode* is not enabled in this deployment; the negotiated state is
        left untouched in both cases.
        """
        if self._mode is not None:
            raise RunCommandError(
                "Channel already started in {} mode".format(self._mode))
        if not mode.is_enabled:
            raise RunCommandError(
                "Channel mode {} is not enabled".format(mode))

        response = self.run_command(StartCommand(mode, str(password)))

        self._max_buffer_size = response.max_buffer_size
        self._protocol_version = response.protocol_version
        self._mode = response.mode
        logger.info("Started %s channel (protocol %d, buffer %d)",
                    self._mode, self._protocol_version,
                    self._max_buffer_size)

    @classmethod
    def connect_with_start(
        cls,
        mode: ChannelMode,
        addr: Address,
        password: str,
        timeout: Optional[float] = None,
    ) -> "SonicStream":
        """Connect to the Sonic server and start a channel in *mode*.

        Sonic does not allow switching modes on an open channel, so
        connecting and starting are a single step.  On any failure the
        socket is closed and no stream is returned.

        Usage::

            with SonicStream.connect_with_start(
                    ChannelMode.SEARCH, "localhost:1491",
                    "SecretPassword") as stream:
                stream.run_command(PingCommand())
        """
        if not mode.is_enabled:
            raise RunCommandError(
                "Channel mode {} is not enabled".format(mode))

        stream = cls._connect(addr, timeout)
        try:
            stream.start(mode, password)
        except BaseException:
            stream.close()
            raise
        return stream

    def close(self) -> None:
        """Close the socket.  Safe to call more than once."""
        if self._sock is None:
            return
        try:
            self._sock.close()
        except OSError:
            pass
        self._sock = None
