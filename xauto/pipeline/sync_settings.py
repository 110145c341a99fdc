"""Sync interval policy stored in the key/value store."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from xauto.core.clock import Clock, SystemClock, parse_iso, utc_iso
from xauto.core.exceptions import ValidationError
from xauto.store.state_store import KeyValueStore

SETTINGS_KEY = "config:sync_settings"
LAST_RUN_KEY = "sync:last_run_at"

DEFAULT_INTERVAL_HOURS = 24
MIN_INTERVAL_HOURS = 1
MAX_INTERVAL_HOURS = 168

REASON_FIRST_RUN = "first_run"
REASON_INTERVAL_REACHED = "interval_reached"
REASON_INTERVAL_NOT_REACHED = "interval_not_reached"


@dataclass
class SyncSettingsValue:
    sync_interval_hours: int
    updated_at: datetime | None = None


def _clamp_hours(value) -> int:
    if isinstance(value, bool):
        return DEFAULT_INTERVAL_HOURS
    # Fractional hours are not a valid stored interval
    if isinstance(value, float) and not value.is_integer():
        return DEFAULT_INTERVAL_HOURS
    try:
        hours = int(value)
    except (TypeError, ValueError):
        return DEFAULT_INTERVAL_HOURS
    return max(MIN_INTERVAL_HOURS, min(MAX_INTERVAL_HOURS, hours))


class SyncSettings:
    """Reads and updates the sync interval and the last-run marker."""

    def __init__(self, kv: KeyValueStore, clock: Clock | None = None):
        self.kv = kv
        self.clock = clock or SystemClock()

    async def get_settings(self) -> SyncSettingsValue:
        stored = await self.kv.get(SETTINGS_KEY) or {}
        return SyncSettingsValue(
            sync_interval_hours=_clamp_hours(
                stored.get("sync_interval_hours", DEFAULT_INTERVAL_HOURS)
            ),
            updated_at=parse_iso(stored.get("updated_at")),
        )

    async def update_settings(self, hours) -> SyncSettingsValue:
        """Store a new interval.

        Raises:
            ValidationError: hours is not an integer in 1..168.
        """
        if isinstance(hours, bool) or not isinstance(hours, int):
            raise ValidationError("sync_interval_hours must be an integer")
        if not MIN_INTERVAL_HOURS <= hours <= MAX_INTERVAL_HOURS:
            raise ValidationError(
                f"sync_interval_hours must be between {MIN_INTERVAL_HOURS} and {MAX_INTERVAL_HOURS}"
            )
        now = self.clock.now()
        await self.kv.upsert_set(
            SETTINGS_KEY, {"sync_interval_hours": hours, "updated_at": utc_iso(now)}
        )
        return SyncSettingsValue(sync_interval_hours=hours, updated_at=now)

    async def last_run_at(self) -> datetime | None:
        stored = await self.kv.get(LAST_RUN_KEY) or {}
        return parse_iso(stored.get("at"))

    async def should_run_now(self) -> tuple[bool, str, SyncSettingsValue]:
        """Decide whether a scheduled sync is due.

        Returns:
            (should_run, reason, settings)
        """
        settings = await self.get_settings()
        last_run = await self.last_run_at()
        if last_run is None:
            return True, REASON_FIRST_RUN, settings

        due_at = last_run + timedelta(hours=settings.sync_interval_hours)
        if self.clock.now() >= due_at:
            return True, REASON_INTERVAL_REACHED, settings
        return False, REASON_INTERVAL_NOT_REACHED, settings

    async def mark_sync_run(self) -> None:
        now = utc_iso(self.clock.now())
        await self.kv.upsert_set(LAST_RUN_KEY, {"at": now, "updated_at": now})
