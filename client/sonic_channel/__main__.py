"""CLI entry point for the sonic_channel client.

Usage::

    sonic-channel --host localhost ping
    sonic-channel query messages user:1 "beef"
    sonic-channel push messages user:1 conversation:1 "I love beef"
    sonic-channel info
"""

import argparse
import configparser
import logging
import os
import sys

from . import (
    ControlChannel, IngestChannel, SearchChannel, SonicError,
)
from .modes import MODES_ENV_VAR

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 1491
DEFAULT_PASSWORD = "SecretPassword"


def cmd_ping(channel, args):
    """Handle the 'ping' subcommand."""
    channel.ping()
    print("PONG")


def cmd_query(channel, args):
    """Handle the 'query' subcommand."""
    for obj in channel.query(args.collection, args.bucket, args.terms,
                             limit=args.limit, offset=args.offset,
                             lang=args.lang):
        print(obj)


def cmd_suggest(channel, args):
    """Handle the 'suggest' subcommand."""
    for word in channel.suggest(args.collection, args.bucket, args.word,
                                limit=args.limit):
        print(word)


def cmd_push(channel, args):
    """Handle the 'push' subcommand."""
    channel.push(args.collection, args.bucket, args.object, args.text,
                 lang=args.lang)
    print("OK")


def cmd_pop(channel, args):
    """Handle the 'pop' subcommand."""
    print(channel.pop(args.collection, args.bucket, args.object, args.text))


def cmd_count(channel, args):
    """Handle the 'count' subcommand."""
    print(channel.count(args.collection, args.bucket, args.object))


def cmd_flushc(channel, args):
    print(channel.flushc(args.collection))


def cmd_flushb(channel, args):
    print(channel.flushb(args.collection, args.bucket))


def cmd_flusho(channel, args):
    print(channel.flusho(args.collection, args.bucket, args.object))


def cmd_consolidate(channel, args):
    """Handle the 'consolidate' subcommand."""
    channel.consolidate()
    print("OK")


def cmd_backup(channel, args):
    """Handle the 'backup' subcommand."""
    channel.backup(args.path)
    print("OK")


def cmd_restore(channel, args):
    """Handle the 'restore' subcommand."""
    channel.restore(args.path)
    print("OK")


def cmd_info(channel, args):
    """Handle the 'info' subcommand."""
    for key, value in channel.info().items():
        print("{}={}".format(key, value))


# subcommand -> (channel class, handler).  A class of None means the
# command works in every mode; see _ping_channel_class().
DISPATCH = {
    "ping": (None, cmd_ping),
    "query": (SearchChannel, cmd_query),
    "suggest": (SearchChannel, cmd_suggest),
    "push": (IngestChannel, cmd_push),
    "pop": (IngestChannel, cmd_pop),
    "count": (IngestChannel, cmd_count),
    "flushc": (IngestChannel, cmd_flushc),
    "flushb": (IngestChannel, cmd_flushb),
    "flusho": (IngestChannel, cmd_flusho),
    "consolidate": (ControlChannel, cmd_consolidate),
    "backup": (ControlChannel, cmd_backup),
    "restore": (ControlChannel, cmd_restore),
    "info": (ControlChannel, cmd_info),
}


def _ping_channel_class():
    """Return the channel class for the first mode this deployment
    enables, in search, ingest, control order."""
    for channel_cls in (SearchChannel, IngestChannel, ControlChannel):
        if channel_cls.mode.is_enabled:
            return channel_cls
    _fail("no channel mode is enabled (check {})".format(MODES_ENV_VAR))


def _default_config_path():
    """Return the path to sonic-channel.conf in the user config dir."""
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(
        os.path.expanduser("~"), ".config")
    return os.path.join(base, "sonic-channel.conf")


def _fail(message):
    print("Error: {}".format(message), file=sys.stderr)
    sys.exit(1)


def _load_config(path, explicit):
    """Load settings from a config file.

    Args:
        path: File path to read.
        explicit: True if the user passed --config (errors are fatal).

    Returns a dict with keys 'host', 'port', 'password', 'timeout' (any
    may be None).
    """
    if not os.path.exists(path):
        if explicit:
            _fail("config file not found: {}".format(path))
        return {}

    config = configparser.ConfigParser()
    try:
        config.read(path)
    except configparser.Error as e:
        if explicit:
            _fail("failed to parse config file: {}".format(e))
        print("Warning: failed to parse config file: {}".format(e),
              file=sys.stderr)
        return {}

    result = {}

    for key in ("host", "password"):
        value = config.get("connection", key, fallback=None)
        if value is not None:
            value = value.strip() or None
        result[key] = value

    for key, getter in (("port", config.getint),
                        ("timeout", config.getfloat)):
        try:
            result[key] = getter("connection", key, fallback=None)
        except ValueError as e:
            if explicit:
                _fail("invalid {} in config file: {}".format(key, e))
            print("Warning: invalid {} in config file: {}".format(key, e),
                  file=sys.stderr)
            result[key] = None

    return result


def _env_port():
    value = os.environ.get("SONIC_PORT")
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        _fail("SONIC_PORT must be an integer, got: {!r}".format(value))


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


def build_parser():
    parser = argparse.ArgumentParser(
        prog="sonic-channel",
        description="Sonic search backend client",
    )
    parser.add_argument("--host", default=None,
                        help="Sonic hostname or IP (default: SONIC_HOST "
                             "env or {})".format(DEFAULT_HOST))
    parser.add_argument("--port", type=int, default=None,
                        help="Sonic channel port (default: SONIC_PORT "
                             "env or {})".format(DEFAULT_PORT))
    parser.add_argument("--password", default=None,
                        help="Channel auth password (default: "
                             "SONIC_PASSWORD env)")
    parser.add_argument("--timeout", type=float, default=None,
                        metavar="SECS", help="Socket timeout in seconds")
    parser.add_argument("--config", default=None, metavar="PATH",
                        help="Path to config file (default: "
                             "~/.config/sonic-channel.conf)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Log handshake (-v) and wire traffic (-vv)")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.required = True

    subparsers.add_parser("ping", help="Ping the server")

    p_query = subparsers.add_parser("query", help="Search a bucket")
    p_query.add_argument("collection")
    p_query.add_argument("bucket")
    p_query.add_argument("terms")
    p_query.add_argument("--limit", type=int, default=None)
    p_query.add_argument("--offset", type=int, default=None)
    p_query.add_argument("--lang", default=None,
                         help="ISO 639-3 language code")

    p_suggest = subparsers.add_parser("suggest",
                                      help="Auto-complete a word")
    p_suggest.add_argument("collection")
    p_suggest.add_argument("bucket")
    p_suggest.add_argument("word")
    p_suggest.add_argument("--limit", type=int, default=None)

    p_push = subparsers.add_parser("push", help="Index text for an object")
    p_push.add_argument("collection")
    p_push.add_argument("bucket")
    p_push.add_argument("object")
    p_push.add_argument("text")
    p_push.add_argument("--lang", default=None,
                        help="ISO 639-3 language code")

    p_pop = subparsers.add_parser("pop",
                                  help="Remove text from an object")
    p_pop.add_argument("collection")
    p_pop.add_argument("bucket")
    p_pop.add_argument("object")
    p_pop.add_argument("text")

    p_count = subparsers.add_parser(
        "count", help="Count buckets, objects or words")
    p_count.add_argument("collection")
    p_count.add_argument("bucket", nargs="?", default=None)
    p_count.add_argument("object", nargs="?", default=None)

    p_flushc = subparsers.add_parser("flushc", help="Flush a collection")
    p_flushc.add_argument("collection")

    p_flushb = subparsers.add_parser("flushb", help="Flush a bucket")
    p_flushb.add_argument("collection")
    p_flushb.add_argument("bucket")

    p_flusho = subparsers.add_parser("flusho", help="Flush an object")
    p_flusho.add_argument("collection")
    p_flusho.add_argument("bucket")
    p_flusho.add_argument("object")

    subparsers.add_parser("consolidate", help="Trigger consolidation")

    p_backup = subparsers.add_parser("backup", help="Back up the stores")
    p_backup.add_argument("path", help="Backup path on the server")

    p_restore = subparsers.add_parser("restore",
                                      help="Restore the stores")
    p_restore.add_argument("path", help="Backup path on the server")

    subparsers.add_parser("info", help="Show server statistics")

    return parser


def main(argv=None) -> None:
    """Parse arguments and dispatch to the appropriate subcommand."""
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level, format="%(levelname)s %(name)s: %(message)s")

    # --- Load config file ---
    config_path = args.config if args.config else _default_config_path()
    cfg = _load_config(config_path, bool(args.config))

    # --- Resolve settings (CLI > env > config > default) ---
    host = _first(args.host, os.environ.get("SONIC_HOST") or None,
                  cfg.get("host"), DEFAULT_HOST)
    port = _first(args.port, _env_port(), cfg.get("port"), DEFAULT_PORT)
    password = _first(args.password,
                      os.environ.get("SONIC_PASSWORD") or None,
                      cfg.get("password"), DEFAULT_PASSWORD)
    timeout = _first(args.timeout, cfg.get("timeout"))

    channel_cls, handler = DISPATCH[args.command]
    if channel_cls is None:
        channel_cls = _ping_channel_class()
    try:
        with channel_cls.start((host, port), password,
                               timeout=timeout) as channel:
            handler(channel, args)
    except (SonicError, ValueError, OSError) as e:
        _fail(e)


if __name__ == "__main__":
    main()
