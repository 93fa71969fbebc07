"""Manufacturer-aware background-sync compatibility table.

Some Android OEMs kill background work aggressively, so a periodic sync that
runs every 15 minutes on a Pixel may never run at all on a stock Xiaomi.
The table itself lives in ``sync_config.yaml`` (``device_profiles``); this
module only knows how to look a manufacturer up in it.

Lookup is case-insensitive and ignores surrounding whitespace.  A name that
does not match a key or alias exactly is split into words and each word is
tried in turn, so ``"Xiaomi Inc."`` still resolves to ``xiaomi``.  Unknown
manufacturers get the ``default`` profile: medium compatibility, 30 minutes,
no extra constraints.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Iterable

logger = logging.getLogger("healthsync.sync.device_profiles")


class CompatibilityLevel(str, Enum):
    HIGH = "high"      # background sync should work reliably
    MEDIUM = "medium"  # may need user configuration
    LOW = "low"        # unlikely to work reliably


@dataclass(frozen=True)
class DeviceProfile:
    """Static background-execution profile for one manufacturer.

    Attributes:
        manufacturer:                  Normalised manufacturer key.
        level:                         Expected background-sync reliability.
        aggressive_battery_management: OEM kills background tasks.
        recommended_frequency:         Periodic interval to request.
        requires_charging:             Only sync while charging.
        requires_wifi:                 Only sync on unmetered networks.
        warning:                       User-facing whitelisting instructions.
        aliases:                       Other names the OEM reports (brands).
    """

    manufacturer: str
    level: CompatibilityLevel = CompatibilityLevel.MEDIUM
    aggressive_battery_management: bool = False
    recommended_frequency: timedelta = timedelta(minutes=30)
    requires_charging: bool = False
    requires_wifi: bool = False
    warning: str | None = None
    aliases: tuple[str, ...] = ()


DEFAULT_PROFILE = DeviceProfile(manufacturer="default")


@dataclass
class DeviceCompatibility:
    """Result of ``check_compatibility`` for a reported manufacturer."""

    manufacturer: str
    level: CompatibilityLevel
    recommended_frequency: timedelta
    requires_charging: bool
    requires_wifi: bool
    warning: str | None = None
    aggressive_battery_management: bool = False
    is_known: bool = True

    @property
    def recommended_frequency_minutes(self) -> int:
        return int(self.recommended_frequency.total_seconds() // 60)

    def to_dict(self) -> dict:
        return {
            "manufacturer": self.manufacturer,
            "level": self.level.value,
            "recommended_frequency_minutes": self.recommended_frequency_minutes,
            "requires_charging": self.requires_charging,
            "requires_wifi": self.requires_wifi,
            "aggressive_battery_management": self.aggressive_battery_management,
            "warning": self.warning,
            "is_known": self.is_known,
        }


def normalize_manufacturer(name: str | None) -> str:
    return (name or "").strip().lower()


class DeviceProfileTable:
    """Case-insensitive manufacturer → ``DeviceProfile`` mapping."""

    def __init__(
        self,
        profiles: Iterable[DeviceProfile],
        default: DeviceProfile | None = None,
    ) -> None:
        self.default = default or DEFAULT_PROFILE
        self._profiles: dict[str, DeviceProfile] = {}
        self._index: dict[str, DeviceProfile] = {}
        for profile in profiles:
            key = normalize_manufacturer(profile.manufacturer)
            self._profiles[key] = profile
            self._index[key] = profile
            for alias in profile.aliases:
                self._index.setdefault(normalize_manufacturer(alias), profile)

    @property
    def manufacturers(self) -> list[str]:
        return sorted(self._profiles)

    def __len__(self) -> int:
        return len(self._profiles)

    def __contains__(self, manufacturer: object) -> bool:
        return isinstance(manufacturer, str) and self.find(manufacturer) is not None

    def find(self, manufacturer: str | None) -> DeviceProfile | None:
        """Return the matching profile, or None if the manufacturer is unknown."""
        key = normalize_manufacturer(manufacturer)
        if not key:
            return None
        if key in self._index:
            return self._index[key]
        for word in re.split(r"[^a-z0-9]+", key):
            if word and word in self._index:
                return self._index[word]
        return None

    def lookup(self, manufacturer: str | None) -> DeviceProfile:
        return self.find(manufacturer) or self.default

    def check_compatibility(self, manufacturer: str | None) -> DeviceCompatibility:
        """Assess how reliably periodic background sync runs on ``manufacturer``."""
        profile = self.find(manufacturer)
        is_known = profile is not None
        profile = profile or self.default
        if not is_known:
            logger.debug("Unknown manufacturer %r, using default profile", manufacturer)
        return DeviceCompatibility(
            manufacturer=normalize_manufacturer(manufacturer) or "unknown",
            level=profile.level,
            recommended_frequency=profile.recommended_frequency,
            requires_charging=profile.requires_charging,
            requires_wifi=profile.requires_wifi,
            warning=profile.warning,
            aggressive_battery_management=profile.aggressive_battery_management,
            is_known=is_known,
        )

    def is_aggressive_battery_manager(self, manufacturer: str | None) -> bool:
        return self.lookup(manufacturer).aggressive_battery_management


def check_compatibility(manufacturer: str | None) -> DeviceCompatibility:
    """Look ``manufacturer`` up in the configured table."""
    from src.healthsync.config_loader import get_sync_config

    return get_sync_config().device_profiles.check_compatibility(manufacturer)
