"""
Interfaces to the collaborators the relay calls into: tier lookup,
room creation limits, and external event delivery.

Accounts, billing and webhook delivery live outside this service; only
small in-process defaults are provided here.
"""

import datetime
import logging
from abc import ABC, abstractmethod

from pydantic import BaseModel

from config import ANONYMOUS_DAILY_ROOM_LIMIT
from signaling.models import LimitStatus, Tier

logger = logging.getLogger(__name__)


class ConnectionInfo(BaseModel):
    """What the relay knows about a client connection."""
    connection_id: str
    client_host: str = ""
    token: str | None = None
    fingerprint: str | None = None


class TierResolver(ABC):
    @abstractmethod
    async def resolve(self, info: ConnectionInfo) -> Tier: ...


class StaticTierResolver(TierResolver):
    """Every connection gets the same tier."""

    def __init__(self, tier: Tier = Tier.ANONYMOUS) -> None:
        self._tier = tier

    async def resolve(self, info: ConnectionInfo) -> Tier:
        return self._tier


class TokenTierResolver(TierResolver):
    """Looks the connection's token up in a fixed table."""

    def __init__(self, tokens: dict[str, Tier], default: Tier = Tier.ANONYMOUS) -> None:
        self._tokens = dict(tokens)
        self._default = default

    async def resolve(self, info: ConnectionInfo) -> Tier:
        if info.token and info.token in self._tokens:
            return self._tokens[info.token]
        return self._default

    @classmethod
    def from_config(cls, entries: dict[str, str]) -> "TokenTierResolver":
        """Build from raw token:tier settings, skipping tiers that do not exist."""
        tokens = {}
        for token, name in entries.items():
            try:
                tokens[token.strip()] = Tier(name.strip().lower())
            except ValueError:
                logger.warning(f"Ignoring token with unknown tier '{name}'")
        return cls(tokens)


class RoomCreationLimiter(ABC):
    @abstractmethod
    async def check(self, info: ConnectionInfo, tier: Tier) -> LimitStatus: ...

    @abstractmethod
    async def record(self, info: ConnectionInfo, tier: Tier) -> None:
        """Count a successfully created room."""


class UnlimitedRoomLimiter(RoomCreationLimiter):
    async def check(self, info: ConnectionInfo, tier: Tier) -> LimitStatus:
        return LimitStatus(allowed=True)

    async def record(self, info: ConnectionInfo, tier: Tier) -> None:
        return None


def _next_utc_midnight(now: datetime.datetime) -> datetime.datetime:
    tomorrow = now.date() + datetime.timedelta(days=1)
    return datetime.datetime.combine(
        tomorrow, datetime.time.min, tzinfo=datetime.timezone.utc
    )


class DailyRoomLimiter(RoomCreationLimiter):
    """
    Caps rooms created per day by anonymous clients.

    Clients are keyed by fingerprint, falling back to the remote host.
    Counters reset at midnight UTC. Signed-in tiers are not limited.
    """

    def __init__(self, limit: int = ANONYMOUS_DAILY_ROOM_LIMIT, clock=None) -> None:
        self._limit = limit
        self._clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self._counts: dict[str, tuple[datetime.date, int]] = {}

    def _key(self, info: ConnectionInfo) -> str:
        return info.fingerprint or info.client_host or info.connection_id

    def _usage(self, key: str, today: datetime.date) -> int:
        day, count = self._counts.get(key, (today, 0))
        return count if day == today else 0

    async def check(self, info: ConnectionInfo, tier: Tier) -> LimitStatus:
        if tier != Tier.ANONYMOUS:
            return LimitStatus(allowed=True)

        now = self._clock()
        used = self._usage(self._key(info), now.date())
        remaining = max(0, self._limit - used)
        return LimitStatus(
            allowed=remaining > 0,
            remaining=remaining,
            reset_time=_next_utc_midnight(now).timestamp(),
        )

    async def record(self, info: ConnectionInfo, tier: Tier) -> None:
        if tier != Tier.ANONYMOUS:
            return
        today = self._clock().date()
        key = self._key(info)
        self._counts[key] = (today, self._usage(key, today) + 1)


class EventSink(ABC):
    """Receives relay events for external notification (webhooks etc.)."""

    @abstractmethod
    async def publish(self, event: str, data: dict) -> None: ...


class LoggingEventSink(EventSink):
    async def publish(self, event: str, data: dict) -> None:
        logger.info(f"Relay event {event}: {data}")
