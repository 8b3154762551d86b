"""Escalation tiers: who is alerted when a case reaches a given level."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from app.core.constants import Channel
from app.core.errors import ConfigurationError
from app.core.settings import Settings


@dataclass(frozen=True, slots=True)
class Recipient:
    channel: str
    address: str
    name: str | None = None

    @property
    def label(self) -> str:
        return self.name or self.channel


# Maps an assignee id to the contact that should receive assignment alerts.
ContactResolver = Callable[[str], "Recipient | None"]


class EscalationRoster:
    """Ordered escalation tiers; tier 1 handles level 1, and so on.

    Levels beyond the last tier keep alerting the last tier.
    """

    def __init__(self, tiers: list[Recipient] | None = None) -> None:
        self.tiers = list(tiers or [])

    @classmethod
    def from_settings(cls, settings: Settings) -> EscalationRoster:
        valid_channels = {c.value for c in Channel}
        tiers: list[Recipient] = []
        for index, raw in enumerate(settings.escalation_tiers, start=1):
            channel = raw.get("channel")
            address = raw.get("address")
            if channel not in valid_channels or not address:
                raise ConfigurationError(
                    f"Escalation tier {index} needs a valid channel and address"
                )
            tiers.append(Recipient(channel=channel, address=address, name=raw.get("name")))
        return cls(tiers)

    def recipient_for(self, level: int) -> Recipient | None:
        if not self.tiers or level < 1:
            return None
        return self.tiers[min(level, len(self.tiers)) - 1]
