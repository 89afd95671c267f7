"""Wire protocol helpers for the sonic_channel client.

Handles line framing, text quoting, and the exception hierarchy for the
Sonic channel protocol.  All wire communication is UTF-8, one message per
line, CR LF terminated.
"""

import enum
import socket
from typing import Optional

ENCODING = "utf-8"
TERMINATOR = "\r\n"


class ErrorKind(enum.Enum):
    """The closed set of failure kinds reported by the client."""

    CONNECT_TO_SERVER = "connect_to_server"
    WRITE_TO_STREAM = "write_to_stream"
    READ_STREAM = "read_stream"
    RUN_COMMAND = "run_command"
    WRONG_RESPONSE = "wrong_response"
    SERVER_ERROR = "server_error"


class SonicError(Exception):
    """Base exception for every failure raised by sonic_channel.

    Attributes:
        kind: The ErrorKind this exception represents.
    """

    kind = None  # type: Optional[ErrorKind]


class ConnectToServerError(SonicError):
    """Raised when the TCP connect fails or the greeting is not
    ``CONNECTED ...``."""

    kind = ErrorKind.CONNECT_TO_SERVER


class WriteToStreamError(SonicError):
    """Raised when an outbound message could not be fully written."""

    kind = ErrorKind.WRITE_TO_STREAM


class ReadStreamError(SonicError):
    """Raised when a response line could not be read (EOF, timeout,
    socket error)."""

    kind = ErrorKind.READ_STREAM


class RunCommandError(SonicError):
    """Raised when a command is attempted while its preconditions are
    violated (e.g. starting a mode on an already started channel)."""

    kind = ErrorKind.RUN_COMMAND


class WrongResponseError(SonicError):
    """Raised by a command's decode step when the response text does not
    have the expected layout."""

    kind = ErrorKind.WRONG_RESPONSE


class ServerError(SonicError):
    """Raised when the server answers a command with an ERR line.

    Attributes:
        reason: The ERR line content after "ERR " (e.g. "invalid_format").
    """

    kind = ErrorKind.SERVER_ERROR

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__("ERR {}".format(reason))


def read_line(sock: socket.socket, buffer_size: int) -> str:
    """Read a single line from the socket, including its LF terminator.

    Peeks at most *buffer_size* bytes at a time and only consumes bytes
    up to and including the first LF, so data belonging to a later
    response is left on the socket.  Raises ReadStreamError on EOF
    (connection closed before LF), socket timeout or socket error.
    """
    buf = bytearray()
    while True:
        try:
            peeked = sock.recv(buffer_size, socket.MSG_PEEK)
        except socket.timeout as e:
            raise ReadStreamError(
                "Timed out waiting for data from server") from e
        except OSError as e:
            raise ReadStreamError("Socket error: {}".format(e)) from e

        if not peeked:
            if buf:
                raise ReadStreamError(
                    "Connection closed mid-line (partial data: {!r})".format(
                        bytes(buf)
                    )
                )
            raise ReadStreamError("Connection closed by server")

        newline = peeked.find(b"\n")
        take = len(peeked) if newline < 0 else newline + 1
        try:
            chunk = sock.recv(take)
        except OSError as e:
            raise ReadStreamError("Socket error: {}".format(e)) from e
        buf.extend(chunk)
        if chunk.endswith(b"\n"):
            break

    try:
        return buf.decode(ENCODING)
    except UnicodeDecodeError as e:
        raise ReadStreamError(
            "Response is not valid {}: {!r}".format(ENCODING, bytes(buf))
        ) from e


def send_message(sock: socket.socket, message: str, buffer_size: int) -> None:
    """Send an already terminated message, at most *buffer_size* bytes
    per write.

    Raises WriteToStreamError if any part of the message cannot be sent.
    """
    data = message.encode(ENCODING)
    offset = 0
    while offset < len(data):
        chunk = data[offset:offset + buffer_size]
        try:
            sock.sendall(chunk)
        except OSError as e:
            raise WriteToStreamError(
                "Failed after {}/{} bytes: {}".format(
                    offset, len(data), e)) from e
        offset += len(chunk)


def quote_text(text: str) -> str:
    """Wrap free text in double quotes for the wire.

    Embedded quotes are backslash-escaped and line breaks collapsed to a
    literal ``\\n`` so the message stays on one line.
    """
    escaped = (text.replace("\\", "\\\\")
               .replace('"', '\\"')
               .replace("\r\n", "\\n")
               .replace("\n", "\\n")
               .replace("\r", "\\n"))
    return '"{}"'.format(escaped)
