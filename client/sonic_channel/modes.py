"""Channel modes and deployment-time mode selection.

A deployment may only support a subset of the modes.  The enabled set is
read from the ``SONIC_CHANNEL_MODES`` environment variable, a comma
separated list of mode names (e.g. ``search,ingest``).  When the
variable is unset or empty every mode is enabled.
"""

import enum
import logging
import os
from typing import FrozenSet

logger = logging.getLogger(__name__)

MODES_ENV_VAR = "SONIC_CHANNEL_MODES"


class ChannelMode(enum.Enum):
    """Channel modes supported by the Sonic search backend.

    The value is the canonical name used on the wire and for display.
    """

    #: ``query``, ``suggest``, ``ping`` and ``quit``.
    SEARCH = "search"

    #: ``push``, ``pop``, ``count``, ``flushc``, ``flushb``, ``flusho``,
    #: ``ping`` and ``quit``.
    INGEST = "ingest"

    #: ``consolidate``, ``backup``, ``restore``, ``info``, ``ping`` and
    #: ``quit``.
    CONTROL = "control"

    def __str__(self) -> str:
        return self.value

    @property
    def is_enabled(self) -> bool:
        """True if this deployment allows starting channels in this mode."""
        return self in enabled_modes()


def enabled_modes() -> FrozenSet[ChannelMode]:
    """Return the modes enabled by ``SONIC_CHANNEL_MODES``.

    Unknown names are ignored with a warning.
    """
    raw = os.environ.get(MODES_ENV_VAR, "").strip()
    if not raw:
        return frozenset(ChannelMode)

    modes = set()
    for name in raw.split(","):
        name = name.strip().lower()
        if not name:
            continue
        try:
            modes.add(ChannelMode(name))
        except ValueError:
            logger.warning("Ignoring unknown channel mode in %s: %r",
                           MODES_ENV_VAR, name)
    return frozenset(modes)
