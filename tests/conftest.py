"""Shared fixtures and helpers for sonic_channel tests.

These tests do not need a running Sonic server.  The ``sonic_server``
fixture starts a scripted fake server on a loopback socket that speaks
just enough of the channel protocol (greeting, START, PING, QUIT) and
answers any other command from a table of canned replies.

Usage:
    pytest tests/ -v
"""

import os
import socket
import sys
import threading

import pytest

# Add the client library to the path so tests can import sonic_channel
_client_dir = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "client",
)
if _client_dir not in sys.path:
    sys.path.insert(0, _client_dir)

from sonic_channel.modes import MODES_ENV_VAR


DEFAULT_GREETING = "CONNECTED <sonic-server v1.4.0>\r\n"


# ---------------------------------------------------------------------------
# Fake server
# ---------------------------------------------------------------------------

class FakeSonicServer:
    """A one-connection Sonic server running in a background thread.

    Replies are looked up by line prefix in registration order.  A reply
    may be a string or a callable taking the received line and returning
    a string.  A reply of None makes the server close the connection.
    Every received line (without terminator) is recorded in
    ``received``.
    """

    def __init__(self, greeting=DEFAULT_GREETING, buffer_size=20000,
                 protocol=1, family=socket.AF_INET):
        self.greeting = greeting
        self.buffer_size = buffer_size
        self.protocol = protocol
        self.received = []
        self._replies = []
        self._listener = socket.socket(family, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        host = "::1" if family == socket.AF_INET6 else "127.0.0.1"
        self._listener.bind((host, 0))
        self._listener.listen(1)
        # IPv6 sockets report (host, port, flowinfo, scope_id)
        self.address = self._listener.getsockname()[:2]
        self._thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def addr(self):
        """The server address as a ``"host:port"`` string, with IPv6
        hosts in brackets."""
        host, port = self.address
        if ":" in host:
            return "[{}]:{}".format(host, port)
        return "{}:{}".format(host, port)

    def reply(self, prefix, response):
        self._replies.append((prefix, response))

    def start(self):
        self._thread.start()
        return self

    def close(self):
        # shutdown() wakes a thread blocked in accept(); close() alone
        # does not on Linux
        try:
            self._listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._listener.close()
        except OSError:
            pass
        self._thread.join(timeout=5)

    def _default_reply(self, line):
        if line.startswith("START "):
            mode = line.split()[1]
            return "STARTED {} protocol({}) buffer({})\r\n".format(
                mode, self.protocol, self.buffer_size)
        if line == "PING":
            return "PONG\r\n"
        if line == "QUIT":
            return "ENDED quit\r\n"
        return "ERR unknown_command\r\n"

    def _reply_for(self, line):
        for prefix, response in self._replies:
            if line.startswith(prefix):
                if callable(response):
                    return response(line)
                return response
        return self._default_reply(line)

    def _serve(self):
        try:
            conn, _peer = self._listener.accept()
        except OSError:
            return
        with conn:
            try:
                if self.greeting is None:
                    return
                conn.sendall(self.greeting.encode("utf-8"))
                stream = conn.makefile("rb")
                for raw in stream:
                    line = raw.decode("utf-8").rstrip("\r\n")
                    self.received.append(line)
                    response = self._reply_for(line)
                    if response is None:
                        return
                    conn.sendall(response.encode("utf-8"))
                    if line == "QUIT":
                        return
            except OSError:
                return


@pytest.fixture
def sonic_server():
    """Provide a started FakeSonicServer, closed on teardown."""
    server = FakeSonicServer().start()
    yield server
    server.close()


@pytest.fixture
def make_server():
    """Factory for FakeSonicServer instances with custom settings.

    Extra replies can be registered before the server is started::

        server = make_server(greeting="HELLO\\r\\n", start=False)
        server.reply("QUERY", "...")
        server.start()
    """
    servers = []

    def factory(start=True, **kwargs):
        server = FakeSonicServer(**kwargs)
        servers.append(server)
        if start:
            server.start()
        return server

    yield factory
    for server in servers:
        server.close()


@pytest.fixture(autouse=True)
def all_modes_enabled(monkeypatch):
    """Run every test with all channel modes enabled unless the test
    sets SONIC_CHANNEL_MODES itself."""
    monkeypatch.delenv(MODES_ENV_VAR, raising=False)
