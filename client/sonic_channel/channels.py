"""Mode-specific channels: search, ingest and control.

Each channel wraps a started :class:`SonicStream` and exposes the
commands its mode allows.  The stream itself does not check that a
command belongs to its mode; the channel classes are where that
vocabulary is defined.

Usage::

    with SearchChannel.start("localhost:1491", "SecretPassword") as search:
        objects = search.query("messages", "user:1", "beef")

    with IngestChannel.start("localhost:1491", "SecretPassword") as ingest:
        ingest.push("messages", "user:1", "conversation:1", "I love beef")
"""

import logging
from typing import Dict, List, Optional, Union

from .commands import (
    CountCommand, FlushCommand, InfoCommand, PingCommand, PopCommand,
    PushCommand, QueryCommand, QuitCommand, SuggestCommand, TriggerCommand,
)
from .modes import ChannelMode
from .stream import Address, SonicStream

logger = logging.getLogger(__name__)


class SonicChannel:
    """Base class for channels bound to one mode.

    Subclasses set :attr:`mode`.  Can be used as a context manager; on
    exit a best-effort QUIT is sent and the socket is closed.
    """

    mode = None  # type: Optional[ChannelMode]

    def __init__(self, stream: SonicStream) -> None:
        self._stream = stream

    @classmethod
    def start(cls, addr: Address, password: str,
              timeout: Optional[float] = None) -> "SonicChannel":
        """Connect to the Sonic server and start a channel in this
        class's mode."""
        if cls.mode is None:
            raise TypeError("{} has no channel mode".format(cls.__name__))
        stream = SonicStream.connect_with_start(
            cls.mode, addr, password, timeout=timeout)
        return cls(stream)

    def __enter__(self) -> "SonicChannel":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore
        self.close()
        return None

    def __repr__(self) -> str:
        return "{}({!r})".format(type(self).__name__, self._stream)

    @property
    def stream(self) -> SonicStream:
        """The underlying started stream."""
        return self._stream

    def ping(self) -> bool:
        """Send PING; returns True on PONG."""
        return self._stream.run_command(PingCommand())

    def quit(self) -> str:
        """Send QUIT and close the connection.

        Returns the ENDED reason.  The channel is unusable afterwards.
        """
        try:
            return self._stream.run_command(QuitCommand())
        finally:
            self._stream.close()

    def close(self) -> None:
        """Send QUIT (best-effort) and close the socket."""
        if self._stream.closed:
            return
        # Best-effort QUIT so the server can release the channel
        try:
            self._stream.run_command(QuitCommand())
        except Exception as e:
            logger.debug("QUIT on close failed: %s", e)
        self._stream.close()


class SearchChannel(SonicChannel):
    """Channel started in search mode."""

    mode = ChannelMode.SEARCH

    def query(
        self,
        collection: str,
        bucket: str,
        terms: str,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        lang: Optional[str] = None,
    ) -> List[str]:
        """Search *terms* in a bucket and return matching object ids."""
        return self._stream.run_command(QueryCommand(
            collection, bucket, terms, limit=limit, offset=offset,
            lang=lang))

    def suggest(
        self,
        collection: str,
        bucket: str,
        word: str,
        limit: Optional[int] = None,
    ) -> List[str]:
        """Return word completions for *word*."""
        return self._stream.run_command(
            SuggestCommand(collection, bucket, word, limit=limit))


class IngestChannel(SonicChannel):
    """Channel started in ingest mode."""

    mode = ChannelMode.INGEST

    def push(
        self,
        collection: str,
        bucket: str,
        object: str,
        text: str,
        lang: Optional[str] = None,
    ) -> bool:
        """Index *text* for *object*."""
        return self._stream.run_command(
            PushCommand(collection, bucket, object, text, lang=lang))

    def pop(self, collection: str, bucket: str, object: str,
            text: str) -> int:
        """Remove *text* from *object*'s index; returns the word count
        removed."""
        return self._stream.run_command(
            PopCommand(collection, bucket, object, text))

    def count(
        self,
        collection: str,
        bucket: Optional[str] = None,
        object: Optional[str] = None,
    ) -> int:
        return self._stream.run_command(
            CountCommand(collection, bucket, object))

    def bucket_count(self, collection: str) -> int:
        """Number of buckets in *collection*."""
        return self.count(collection)

    def object_count(self, collection: str, bucket: str) -> int:
        """Number of objects in *bucket*."""
        return self.count(collection, bucket)

    def word_count(self, collection: str, bucket: str, object: str) -> int:
        """Number of indexed words for *object*."""
        return self.count(collection, bucket, object)

    def flushc(self, collection: str) -> int:
        """Flush a whole collection."""
        return self._stream.run_command(FlushCommand(collection))

    def flushb(self, collection: str, bucket: str) -> int:
        """Flush one bucket."""
        return self._stream.run_command(FlushCommand(collection, bucket))

    def flusho(self, collection: str, bucket: str, object: str) -> int:
        """Flush one object."""
        return self._stream.run_command(
            FlushCommand(collection, bucket, object))


class ControlChannel(SonicChannel):
    """Channel started in control mode."""

    mode = ChannelMode.CONTROL

    def consolidate(self) -> bool:
        """Trigger index consolidation."""
        return self._stream.run_command(TriggerCommand("consolidate"))

    def backup(self, path: str) -> bool:
        """Back up the KV and FST stores to *path* on the server."""
        return self._stream.run_command(TriggerCommand("backup", path))

    def restore(self, path: str) -> bool:
        """Restore the KV and FST stores from *path* on the server."""
        return self._stream.run_command(TriggerCommand("restore", path))

    def info(self) -> Dict[str, Union[int, str]]:
        """Return server statistics (uptime, clients, latencies...)."""
        return self._stream.run_command(InfoCommand())
