"""Tests for the connection handshake and generic command dispatch.

Handshake tests run against the FakeSonicServer from conftest.py.
Dispatch ordering tests use SonicStream instances wrapped around mocked
sockets so that write and read failures can be injected.
"""

import socket
from typing import List
from unittest import mock

import pytest

from sonic_channel.commands import PingCommand, QueryCommand, StreamCommand
from sonic_channel.modes import MODES_ENV_VAR, ChannelMode, enabled_modes
from sonic_channel.protocol import (
    TERMINATOR, ConnectToServerError, ReadStreamError, RunCommandError,
    ServerError, WriteToStreamError, WrongResponseError,
)
from sonic_channel.stream import (
    DEFAULT_PORT, DEFAULT_PROTOCOL_VERSION,
    UNINITIALIZED_MODE_MAX_BUFFER_SIZE, SonicStream, parse_address,
)


class EchoCommand(StreamCommand):
    """Sends ``ECHO <fields...>`` and decodes the server's echo of it."""

    def __init__(self, fields):
        self.fields = tuple(fields)

    def message(self):
        return "ECHO {}{}".format(" ".join(self.fields), TERMINATOR)

    def parse(self, lines: List[str]):
        verb, *fields = lines[0].split()
        if verb != "ECHO":
            raise WrongResponseError(lines[0])
        return tuple(fields)


def _mock_stream():
    """Create a started SonicStream around a mocked socket."""
    stream = SonicStream(mock.MagicMock())
    stream._mode = ChannelMode.SEARCH
    return stream


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

class TestConnectWithStart:
    """Connect then START, end to end against the fake server."""

    def test_search_scenario(self, sonic_server):
        """CONNECTED greeting, START search, STARTED with protocol(1)
        buffer(20000)."""
        stream = SonicStream.connect_with_start(
            ChannelMode.SEARCH, sonic_server.addr, "SecretPassword",
            timeout=5)
        try:
            assert stream.mode is ChannelMode.SEARCH
            assert stream.protocol_version == 1
            assert stream.max_buffer_size == 20000
            assert stream.greeting == "CONNECTED <sonic-server v1.4.0>"
        finally:
            stream.close()
        assert sonic_server.received[0] == "START search SecretPassword"

    @pytest.mark.parametrize("mode", list(ChannelMode))
    def test_every_mode(self, make_server, mode):
        server = make_server(buffer_size=4096, protocol=2)
        with SonicStream.connect_with_start(
                mode, server.address, "pw", timeout=5) as stream:
            assert stream.mode is mode
            assert stream.max_buffer_size == 4096
            assert stream.protocol_version == 2

    def test_invalid_greeting(self, make_server):
        server = make_server(greeting="HELLO there\r\n")
        with pytest.raises(ConnectToServerError, match="Invalid greeting"):
            SonicStream.connect_with_start(
                ChannelMode.SEARCH, server.addr, "pw", timeout=5)
        assert server.received == []

    def test_missing_greeting(self, make_server):
        server = make_server(greeting=None)
        with pytest.raises(ConnectToServerError, match="No greeting"):
            SonicStream.connect_with_start(
                ChannelMode.SEARCH, server.addr, "pw", timeout=5)

    def test_connection_refused(self):
        # Bind then close to get a port nothing listens on
        unused = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        unused.bind(("127.0.0.1", 0))
        port = unused.getsockname()[1]
        unused.close()
        with pytest.raises(ConnectToServerError) as excinfo:
            SonicStream.connect_with_start(
                ChannelMode.SEARCH, ("127.0.0.1", port), "pw", timeout=5)
        assert isinstance(excinfo.value.__cause__, OSError)

    def test_authentication_failure_closes_socket(self, make_server):
        server = make_server(start=False)
        server.reply("START", "ENDED authentication_failed\r\n")
        server.start()
        with mock.patch.object(SonicStream, "close",
                               autospec=True,
                               side_effect=SonicStream.close) as close:
            with pytest.raises(WrongResponseError):
                SonicStream.connect_with_start(
                    ChannelMode.SEARCH, server.addr, "wrong", timeout=5)
        assert close.call_count == 1

    def test_start_err_reply(self, make_server):
        server = make_server(start=False)
        server.reply("START", "ERR invalid_mode\r\n")
        server.start()
        with pytest.raises(ServerError) as excinfo:
            SonicStream.connect_with_start(
                ChannelMode.CONTROL, server.addr, "pw", timeout=5)
        assert excinfo.value.reason == "invalid_mode"

    def test_zero_buffer_size_rejected(self, make_server):
        server = make_server(buffer_size=0)
        with pytest.raises(WrongResponseError, match="buffer size"):
            SonicStream.connect_with_start(
                ChannelMode.SEARCH, server.addr, "pw", timeout=5)

    @pytest.mark.parametrize("password", ["two words", "pw\r\nFLUSHC messages"])
    def test_password_with_whitespace_not_sent(self, make_server, password):
        server = make_server()
        with pytest.raises(ValueError, match="Password"):
            SonicStream.connect_with_start(
                ChannelMode.SEARCH, server.addr, password, timeout=5)
        server.close()
        assert server.received == []

    def test_ipv6_literal_address(self, make_server):
        if not socket.has_ipv6:
            pytest.skip("IPv6 not supported")
        try:
            server = make_server(family=socket.AF_INET6)
        except OSError:
            pytest.skip("IPv6 loopback not available")
        assert server.addr.startswith("[::1]:")
        with SonicStream.connect_with_start(
                ChannelMode.SEARCH, server.addr, "pw", timeout=5) as stream:
            assert stream.mode is ChannelMode.SEARCH
            assert stream.run_command(PingCommand()) is True
        assert server.received[:2] == ["START search pw", "PING"]


class TestStart:
    """Tests for the START precondition and state adoption."""

    def test_second_start_fails_and_keeps_state(self, sonic_server):
        with SonicStream.connect_with_start(
                ChannelMode.SEARCH, sonic_server.addr, "pw",
                timeout=5) as stream:
            with pytest.raises(RunCommandError, match="already started"):
                stream.start(ChannelMode.INGEST, "pw")
            assert stream.mode is ChannelMode.SEARCH
            assert stream.max_buffer_size == 20000
            assert stream.protocol_version == 1
            # The stream is still usable
            assert stream.run_command(PingCommand()) is True
        assert sonic_server.received == ["START search pw", "PING"]

    def test_second_start_sends_nothing(self):
        stream = _mock_stream()
        with pytest.raises(RunCommandError):
            stream.start(ChannelMode.SEARCH, "pw")
        stream._sock.sendall.assert_not_called()

    def test_defaults_before_start(self):
        stream = SonicStream(mock.MagicMock())
        assert stream.mode is None
        assert stream.max_buffer_size == UNINITIALIZED_MODE_MAX_BUFFER_SIZE
        assert stream.protocol_version == DEFAULT_PROTOCOL_VERSION
        assert UNINITIALIZED_MODE_MAX_BUFFER_SIZE == 200

    def test_negotiated_state_is_read_only(self, sonic_server):
        with SonicStream.connect_with_start(
                ChannelMode.SEARCH, sonic_server.addr, "pw",
                timeout=5) as stream:
            with pytest.raises(AttributeError):
                stream.mode = ChannelMode.INGEST
            with pytest.raises(AttributeError):
                stream.max_buffer_size = 1

    def test_disabled_mode(self, sonic_server, monkeypatch):
        monkeypatch.setenv(MODES_ENV_VAR, "search,control")
        with pytest.raises(RunCommandError, match="not enabled"):
            SonicStream.connect_with_start(
                ChannelMode.INGEST, sonic_server.addr, "pw", timeout=5)
        assert sonic_server.received == []


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

class TestRunCommand:
    """Tests for the write -> read -> decode cycle."""

    def test_echo_round_trip(self, sonic_server):
        sonic_server.reply("ECHO", lambda line: line + "\r\n")
        with SonicStream.connect_with_start(
                ChannelMode.SEARCH, sonic_server.addr, "pw",
                timeout=5) as stream:
            fields = ("search", "default", "beef")
            assert stream.run_command(EchoCommand(fields)) == fields

    def test_write_failure_skips_read(self):
        stream = _mock_stream()
        stream._sock.sendall.side_effect = BrokenPipeError("gone")
        command = mock.MagicMock(spec=StreamCommand)
        command.message.return_value = "PING\r\n"
        command.read_lines_count = 1
        with pytest.raises(WriteToStreamError):
            stream.run_command(command)
        stream._sock.recv.assert_not_called()
        command.receive.assert_not_called()

    def test_read_failure_skips_decode(self):
        stream = _mock_stream()
        stream._sock.recv.return_value = b""
        command = mock.MagicMock(spec=StreamCommand)
        command.message.return_value = "PING\r\n"
        command.read_lines_count = 1
        with pytest.raises(ReadStreamError):
            stream.run_command(command)
        stream._sock.sendall.assert_called_once_with(b"PING\r\n")
        command.receive.assert_not_called()

    def test_reads_declared_line_count(self):
        stream = _mock_stream()
        stream._read = mock.MagicMock(return_value="raw")
        command = mock.MagicMock(spec=StreamCommand)
        command.message.return_value = "QUERY a b \"c\"\r\n"
        command.read_lines_count = 2
        command.receive.return_value = ["obj"]
        assert stream.run_command(command) == ["obj"]
        stream._read.assert_called_once_with(2)
        command.receive.assert_called_once_with("raw")

    def test_err_line_ends_response_early(self, sonic_server):
        sonic_server.reply("QUERY", "ERR query_error\r\n")
        with SonicStream.connect_with_start(
                ChannelMode.SEARCH, sonic_server.addr, "pw",
                timeout=5) as stream:
            with pytest.raises(ServerError, match="query_error"):
                stream.run_command(QueryCommand("c", "b", "t"))
            # The next command is framed correctly
            assert stream.run_command(PingCommand()) is True

    def test_closed_stream(self):
        stream = _mock_stream()
        stream.close()
        assert stream.closed
        with pytest.raises(RunCommandError, match="closed"):
            stream.run_command(PingCommand())

    def test_close_twice(self):
        stream = _mock_stream()
        sock = stream._sock
        stream.close()
        stream.close()
        sock.close.assert_called_once_with()


# ---------------------------------------------------------------------------
# Addresses and mode selection
# ---------------------------------------------------------------------------

class TestParseAddress:
    """Tests for parse_address()."""

    @pytest.mark.parametrize("addr,expected", [
        ("localhost:1491", ("localhost", 1491)),
        ("10.0.0.5:2000", ("10.0.0.5", 2000)),
        ("localhost", ("localhost", DEFAULT_PORT)),
        ("[::1]:1500", ("::1", 1500)),
        ("[::1]", ("::1", DEFAULT_PORT)),
        (("example.org", 1491), ("example.org", 1491)),
        (("example.org", "1491"), ("example.org", 1491)),
    ])
    def test_valid(self, addr, expected):
        assert parse_address(addr) == expected

    def test_bad_port(self):
        with pytest.raises(ValueError, match="Invalid port"):
            parse_address("localhost:sonic")


class TestEnabledModes:
    """Tests for SONIC_CHANNEL_MODES handling."""

    def test_all_by_default(self):
        assert enabled_modes() == frozenset(ChannelMode)

    def test_subset(self, monkeypatch):
        monkeypatch.setenv(MODES_ENV_VAR, " Search , ingest ")
        assert enabled_modes() == {ChannelMode.SEARCH, ChannelMode.INGEST}
        assert not ChannelMode.CONTROL.is_enabled

    def test_unknown_names_ignored(self, monkeypatch, caplog):
        monkeypatch.setenv(MODES_ENV_VAR, "search,admin")
        assert enabled_modes() == {ChannelMode.SEARCH}
        assert "admin" in caplog.text

    def test_str_is_wire_name(self):
        assert str(ChannelMode.SEARCH) == "search"
        assert "{}".format(ChannelMode.CONTROL) == "control"
