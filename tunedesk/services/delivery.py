from __future__ import annotations

from dataclasses import dataclass, field


CHANNEL_RECORD = 'record'
CHANNEL_TELEGRAM = 'telegram'
CHANNEL_EMAIL = 'email'
CHANNEL_PUSH = 'push'


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one best-effort side effect. Callers log it; nobody raises on it."""

    channel: str
    ok: bool
    skipped: bool = False
    detail: str | None = None

    @classmethod
    def delivered(cls, channel: str, detail: str | None = None) -> DeliveryResult:
        return cls(channel=channel, ok=True, detail=detail)

    @classmethod
    def skip(cls, channel: str, reason: str) -> DeliveryResult:
        return cls(channel=channel, ok=False, skipped=True, detail=reason)

    @classmethod
    def failed(cls, channel: str, exc: BaseException | str) -> DeliveryResult:
        return cls(channel=channel, ok=False, detail=exc if isinstance(exc, str) else repr(exc))


@dataclass
class FanOutReport:
    user_id: str
    notification_type: str
    results: list[DeliveryResult] = field(default_factory=list)

    def add(self, result: DeliveryResult) -> DeliveryResult:
        self.results.append(result)
        return result

    def for_channel(self, channel: str) -> DeliveryResult | None:
        for result in self.results:
            if result.channel == channel:
                return result
        return None

    def delivered(self, channel: str) -> bool:
        result = self.for_channel(channel)
        return bool(result and result.ok)

    @property
    def failures(self) -> list[DeliveryResult]:
        return [r for r in self.results if not r.ok and not r.skipped]
