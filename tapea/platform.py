"""Platform capabilities resolved once at startup and injected where needed."""

from dataclasses import dataclass

from tapea import settings


@dataclass(frozen=True)
class PlatformCapabilities:
    has_maps: bool = True
    has_native_payments: bool = True

    @classmethod
    def from_settings(cls) -> "PlatformCapabilities":
        return cls(
            has_maps=settings.HAS_MAPS,
            has_native_payments=settings.HAS_NATIVE_PAYMENTS,
        )
