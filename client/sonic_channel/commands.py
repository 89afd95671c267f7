"""Command definitions for every Sonic channel mode.

Each command renders its own wire message, declares how many response
lines the dispatcher must read, and decodes those lines.  The dispatcher
(:meth:`SonicStream.run_command`) knows nothing about individual commands.

Examples::

    START search SecretPassword -> STARTED search protocol(1) buffer(20000)
    PING                        -> PONG
    QUERY messages user:1 "hi"  -> PENDING Bt2m2gYa
                                   EVENT QUERY Bt2m2gYa conversation:1
    PUSH messages user:1 c:1 "hi" -> OK
    COUNT messages              -> RESULT 42
"""

import abc
import re
from typing import Any, Dict, List, NamedTuple, Optional, Union

from .modes import ChannelMode
from .protocol import TERMINATOR, ServerError, WrongResponseError, quote_text


def _split_lines(message: str) -> List[str]:
    return [line for line in message.splitlines() if line]


def _parse_result_count(line: str) -> int:
    """Parse a ``RESULT <n>`` line into n."""
    if not line.startswith("RESULT "):
        raise WrongResponseError(
            "Expected RESULT, got: {!r}".format(line))
    try:
        return int(line[7:])
    except ValueError:
        raise WrongResponseError(
            "RESULT has non-numeric count: {!r}".format(line))


def _expect_ok(line: str) -> bool:
    if line != "OK":
        raise WrongResponseError("Expected OK, got: {!r}".format(line))
    return True


class StreamCommand(abc.ABC):
    """A single request/response exchange on a Sonic channel.

    Subclasses provide :meth:`message`, set :attr:`read_lines_count`
    and implement :meth:`parse`.  :meth:`receive` handles the ``ERR``
    reply shared by every command before delegating to :meth:`parse`.
    """

    #: Number of response lines to read before decoding.
    read_lines_count = 1

    @abc.abstractmethod
    def message(self) -> str:
        """Return the exact text to send, including the terminator."""

    def receive(self, message: str) -> Any:
        """Decode the raw response text into this command's result.

        Raises ServerError if the server replied with an ERR line and
        WrongResponseError if the text is otherwise malformed.
        """
        lines = _split_lines(message)
        for line in lines:
            if line == "ERR" or line.startswith("ERR "):
                raise ServerError(line[4:])
        if len(lines) != self.read_lines_count:
            raise WrongResponseError(
                "Expected {} response line(s), got {}: {!r}".format(
                    self.read_lines_count, len(lines), message))
        return self.parse(lines)

    @abc.abstractmethod
    def parse(self, lines: List[str]) -> Any:
        """Decode exactly :attr:`read_lines_count` non-empty lines."""

    def __repr__(self) -> str:
        return "{}({!r})".format(type(self).__name__, self.message())


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

class StartResponse(NamedTuple):
    """Values negotiated by a successful START."""

    mode: ChannelMode
    max_buffer_size: int
    protocol_version: int


_STARTED_RE = re.compile(
    r"^STARTED (\w+) protocol\((\d+)\) buffer\((\d+)\)$")


class StartCommand(StreamCommand):
    """``START <mode> <password>``."""

    def __init__(self, mode: ChannelMode, password: str) -> None:
        if not password or any(ch.isspace() for ch in password):
            raise ValueError(
                "Password must be non-empty and contain no whitespace")
        self.mode = mode
        self.password = password

    def message(self) -> str:
        return "START {} {}{}".format(self.mode, self.password, TERMINATOR)

    def parse(self, lines: List[str]) -> StartResponse:
        match = _STARTED_RE.match(lines[0])
        if match is None:
            raise WrongResponseError(
                "Malformed STARTED line: {!r}".format(lines[0]))
        try:
            mode = ChannelMode(match.group(1))
        except ValueError:
            raise WrongResponseError(
                "Server started unknown mode: {!r}".format(match.group(1)))
        buffer_size = int(match.group(3))
        if buffer_size < 1:
            raise WrongResponseError(
                "Server announced an unusable buffer size: {!r}".format(
                    lines[0]))
        return StartResponse(
            mode=mode,
            max_buffer_size=buffer_size,
            protocol_version=int(match.group(2)),
        )

    def __repr__(self) -> str:
        # Keep the password out of logs
        return "StartCommand({!r})".format(self.mode)


# ---------------------------------------------------------------------------
# Commands available in every mode
# ---------------------------------------------------------------------------

class PingCommand(StreamCommand):
    """``PING`` -> ``PONG``."""

    def message(self) -> str:
        return "PING" + TERMINATOR

    def parse(self, lines: List[str]) -> bool:
        if lines[0] != "PONG":
            raise WrongResponseError(
                "Expected PONG, got: {!r}".format(lines[0]))
        return True


class QuitCommand(StreamCommand):
    """``QUIT`` -> ``ENDED <reason>``.  Returns the reason."""

    def message(self) -> str:
        return "QUIT" + TERMINATOR

    def parse(self, lines: List[str]) -> str:
        line = lines[0]
        if line != "ENDED" and not line.startswith("ENDED "):
            raise WrongResponseError(
                "Expected ENDED, got: {!r}".format(line))
        return line[6:]


# ---------------------------------------------------------------------------
# Search mode
# ---------------------------------------------------------------------------

class _PendingEventCommand(StreamCommand):
    """Commands answered with ``PENDING <id>`` then
    ``EVENT <KIND> <id> <items...>``."""

    read_lines_count = 2
    event_kind = ""

    def parse(self, lines: List[str]) -> List[str]:
        pending, event = lines
        if not pending.startswith("PENDING "):
            raise WrongResponseError(
                "Expected PENDING, got: {!r}".format(pending))
        marker = pending[8:].strip()

        parts = event.split()
        if len(parts) < 3 or parts[0] != "EVENT" \
                or parts[1] != self.event_kind:
            raise WrongResponseError(
                "Expected EVENT {}, got: {!r}".format(self.event_kind, event))
        if parts[2] != marker:
            raise WrongResponseError(
                "EVENT id {!r} does not match PENDING id {!r}".format(
                    parts[2], marker))
        return parts[3:]


class QueryCommand(_PendingEventCommand):
    """``QUERY <collection> <bucket> "<terms>" [LIMIT(n)] [OFFSET(n)]
    [LANG(code)]``.  Returns matching object identifiers."""

    event_kind = "QUERY"

    def __init__(
        self,
        collection: str,
        bucket: str,
        terms: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        lang: Optional[str] = None,
    ) -> None:
        self.collection = collection
        self.bucket = bucket
        self.terms = terms
        self.limit = limit
        self.offset = offset
        self.lang = lang

    def message(self) -> str:
        parts = ["QUERY", self.collection, self.bucket,
                 quote_text(self.terms)]
        if self.limit is not None:
            parts.append("LIMIT({})".format(self.limit))
        if self.offset is not None:
            parts.append("OFFSET({})".format(self.offset))
        if self.lang is not None:
            parts.append("LANG({})".format(self.lang))
        return " ".join(parts) + TERMINATOR


class SuggestCommand(_PendingEventCommand):
    """``SUGGEST <collection> <bucket> "<word>" [LIMIT(n)]``.  Returns
    completion words."""

    event_kind = "SUGGEST"

    def __init__(
        self,
        collection: str,
        bucket: str,
        word: str,
        limit: Optional[int] = None,
    ) -> None:
        self.collection = collection
        self.bucket = bucket
        self.word = word
        self.limit = limit

    def message(self) -> str:
        parts = ["SUGGEST", self.collection, self.bucket,
                 quote_text(self.word)]
        if self.limit is not None:
            parts.append("LIMIT({})".format(self.limit))
        return " ".join(parts) + TERMINATOR


# ---------------------------------------------------------------------------
# Ingest mode
# ---------------------------------------------------------------------------

class PushCommand(StreamCommand):
    """``PUSH <collection> <bucket> <object> "<text>" [LANG(code)]``."""

    def __init__(
        self,
        collection: str,
        bucket: str,
        object: str,
        text: str,
        lang: Optional[str] = None,
    ) -> None:
        self.collection = collection
        self.bucket = bucket
        self.object = object
        self.text = text
        self.lang = lang

    def message(self) -> str:
        parts = ["PUSH", self.collection, self.bucket, self.object,
                 quote_text(self.text)]
        if self.lang is not None:
            parts.append("LANG({})".format(self.lang))
        return " ".join(parts) + TERMINATOR

    def parse(self, lines: List[str]) -> bool:
        return _expect_ok(lines[0])


class PopCommand(StreamCommand):
    """``POP <collection> <bucket> <object> "<text>"``.  Returns the
    number of removed words."""

    def __init__(self, collection: str, bucket: str, object: str,
                 text: str) -> None:
        self.collection = collection
        self.bucket = bucket
        self.object = object
        self.text = text

    def message(self) -> str:
        return "POP {} {} {} {}{}".format(
            self.collection, self.bucket, self.object,
            quote_text(self.text), TERMINATOR)

    def parse(self, lines: List[str]) -> int:
        return _parse_result_count(lines[0])


class CountCommand(StreamCommand):
    """``COUNT <collection> [<bucket> [<object>]]``."""

    def __init__(
        self,
        collection: str,
        bucket: Optional[str] = None,
        object: Optional[str] = None,
    ) -> None:
        if object is not None and bucket is None:
            raise ValueError("COUNT with an object requires a bucket")
        self.collection = collection
        self.bucket = bucket
        self.object = object

    def message(self) -> str:
        parts = ["COUNT", self.collection]
        if self.bucket is not None:
            parts.append(self.bucket)
        if self.object is not None:
            parts.append(self.object)
        return " ".join(parts) + TERMINATOR

    def parse(self, lines: List[str]) -> int:
        return _parse_result_count(lines[0])


class FlushCommand(StreamCommand):
    """``FLUSHC``, ``FLUSHB`` or ``FLUSHO`` depending on how much of the
    collection/bucket/object path is given.  Returns the flushed count."""

    def __init__(
        self,
        collection: str,
        bucket: Optional[str] = None,
        object: Optional[str] = None,
    ) -> None:
        if object is not None and bucket is None:
            raise ValueError("FLUSHO requires a bucket")
        self.collection = collection
        self.bucket = bucket
        self.object = object

    def message(self) -> str:
        if self.object is not None:
            return "FLUSHO {} {} {}{}".format(
                self.collection, self.bucket, self.object, TERMINATOR)
        if self.bucket is not None:
            return "FLUSHB {} {}{}".format(
                self.collection, self.bucket, TERMINATOR)
        return "FLUSHC {}{}".format(self.collection, TERMINATOR)

    def parse(self, lines: List[str]) -> int:
        return _parse_result_count(lines[0])


# ---------------------------------------------------------------------------
# Control mode
# ---------------------------------------------------------------------------

class TriggerCommand(StreamCommand):
    """``TRIGGER <action> [<data>]``: consolidate, backup or restore."""

    ACTIONS = ("consolidate", "backup", "restore")

    def __init__(self, action: str, data: Optional[str] = None) -> None:
        if action not in self.ACTIONS:
            raise ValueError("Unknown TRIGGER action: {!r}".format(action))
        if action != "consolidate" and not data:
            raise ValueError("TRIGGER {} requires a path".format(action))
        self.action = action
        self.data = data

    def message(self) -> str:
        if self.data is None:
            return "TRIGGER {}{}".format(self.action, TERMINATOR)
        return "TRIGGER {} {}{}".format(self.action, self.data, TERMINATOR)

    def parse(self, lines: List[str]) -> bool:
        return _expect_ok(lines[0])


_INFO_FIELD_RE = re.compile(r"(\w+)\(([^)]*)\)")


class InfoCommand(StreamCommand):
    """``INFO`` -> ``RESULT uptime(3600) clients_connected(1) ...``.

    Returns a dict; numeric values are converted to int.
    """

    def message(self) -> str:
        return "INFO" + TERMINATOR

    def parse(self, lines: List[str]) -> Dict[str, Union[int, str]]:
        line = lines[0]
        if not line.startswith("RESULT "):
            raise WrongResponseError(
                "Expected RESULT, got: {!r}".format(line))
        result = {}  # type: Dict[str, Union[int, str]]
        for key, value in _INFO_FIELD_RE.findall(line[7:]):
            try:
                result[key] = int(value)
            except ValueError:
                result[key] = value
        return result
