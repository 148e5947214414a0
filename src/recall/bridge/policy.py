"""Per-channel inbound policy gate."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from recall.bridge.normalizer import CanonicalEvent
from recall.config import BRIDGE_ROLLOUT_CHANNELS, BridgeCfg
from recall.errors import DeniedChannel, PolicyDenied

logger = logging.getLogger(__name__)


class PolicyGate:
    """Look up the inbound mode of a channel from the bridge configuration.

    A channel listed under ``bridge.channels`` uses its own mode; every other
    channel falls back to ``bridge.default_mode``.
    """

    def __init__(self, cfg: BridgeCfg | None = None) -> None:
        self._cfg = cfg or BridgeCfg()

    def mode(self, channel: str) -> str:
        entry = self._cfg.channels.get(channel.lower())
        return entry.inbound_mode if entry is not None else self._cfg.default_mode

    def check(self, events: Iterable[tuple[int, CanonicalEvent]]) -> None:
        """Reject the whole batch if any event's channel is not ``draft_only``.

        Raises:
            PolicyDenied: Listing every denied (index, channel, mode).
        """
        denied = [
            DeniedChannel(index=index, channel=event.channel, inbound_mode=mode)
            for index, event in events
            if (mode := self.mode(event.channel)) != "draft_only"
        ]
        if denied:
            logger.warning(
                "bridge inbound denied for %s",
                ", ".join(f"#{d.index}:{d.channel}" for d in denied),
            )
            raise PolicyDenied(denied)

    def rollout(self) -> dict[str, str]:
        """Inbound mode of every rollout channel (plus any other configured one)."""
        channels = list(BRIDGE_ROLLOUT_CHANNELS)
        channels += sorted(c for c in self._cfg.channels if c not in channels)
        return {channel: self.mode(channel) for channel in channels}
