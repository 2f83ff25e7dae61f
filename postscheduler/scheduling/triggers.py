"""
Trigger conversion and the shared trigger-firing facility.

``to_cron_expression`` pins an absolute calendar time to a five-field cron
expression (minute, hour, day-of-month, month; day-of-week ``*``).

``TriggerFacility`` runs one asyncio loop for every armed trigger. Each
due trigger is handed to its own task so a slow job never delays another
job's trigger check. Two kinds of trigger are supported:

- cron triggers (``arm_cron``), which re-arm after every firing until
  disarmed;
- one-shot triggers (``arm_at``), which fire once at an absolute instant
  and disarm themselves (used for retry backoff).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from postscheduler.exceptions import InvalidCronPattern, InvalidTimeSpec
from postscheduler.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[], Awaitable[None]]


# =============================================================================
# TRIGGER CONVERTER
# =============================================================================


def load_timezone(name: str) -> ZoneInfo:
    """
    Resolve an IANA timezone name.

    Raises:
        InvalidTimeSpec: If the zone is unknown.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, TypeError) as exc:
        raise InvalidTimeSpec(f"Invalid timezone: {name}") from exc


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """
    Parse an ISO-8601 timestamp (``Z`` suffix accepted).

    Raises:
        InvalidTimeSpec: If the value is not a recognisable timestamp.
    """
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        raise InvalidTimeSpec(f"Invalid datetime: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise InvalidTimeSpec(
            f"Invalid datetime format: {value!r}. Use ISO-8601, e.g. 2025-07-01T09:00:00"
        ) from exc


def localize(value: Union[str, datetime], tz_name: str) -> datetime:
    """
    Express a timestamp as wall time in ``tz_name``.

    Aware timestamps are converted; naive timestamps are read as wall time
    in the zone.

    Raises:
        InvalidTimeSpec: On an unknown zone, an unparseable timestamp, or a
            wall time that does not exist in the zone (DST gap).
    """
    tz = load_timezone(tz_name)
    dt = parse_timestamp(value)
    if dt.tzinfo is not None:
        return dt.astimezone(tz)

    local = dt.replace(tzinfo=tz)
    round_trip = local.astimezone(timezone.utc).astimezone(tz)
    if round_trip.replace(tzinfo=None) != dt:
        raise InvalidTimeSpec(f"{dt.isoformat()} does not exist in timezone {tz_name}")
    return local


def to_cron_expression(value: Union[str, datetime], tz_name: str = "UTC") -> str:
    """
    Convert an absolute timestamp to a cron expression firing at that minute.

    Sub-minute precision is discarded.

    Args:
        value: Timestamp (``datetime`` or ISO-8601 string).
        tz_name: Timezone the trigger is evaluated in.

    Returns:
        ``"<minute> <hour> <day> <month> *"`` in the zone's wall time.

    Raises:
        InvalidTimeSpec: If the timestamp cannot be localized to the zone.
    """
    local = localize(value, tz_name)
    return f"{local.minute} {local.hour} {local.day} {local.month} *"


def validate_cron_pattern(expression: str) -> str:
    """
    Check that a recurring pattern is syntactically parseable.

    Raises:
        InvalidCronPattern: If croniter cannot parse the pattern.
    """
    if not isinstance(expression, str) or len(expression.split()) != 5:
        raise InvalidCronPattern(f"Invalid cron pattern: {expression!r} (expected five fields)")
    if not croniter.is_valid(expression):
        raise InvalidCronPattern(f"Invalid cron pattern: {expression!r}")
    return expression


def next_fire_time(expression: str, tz_name: str, after: datetime) -> datetime:
    """
    First instant strictly after ``after`` matching ``expression`` in ``tz_name``.

    Returns:
        Timezone-aware UTC datetime.
    """
    tz = load_timezone(tz_name)
    base = ensure_utc(after).astimezone(tz)
    fire = croniter(expression, base).get_next(datetime)
    return ensure_utc(fire)


# =============================================================================
# TRIGGER HANDLE
# =============================================================================


@dataclass(eq=False)
class TriggerHandle:
    """An armed trigger owned by ``TriggerFacility``.

    Attributes:
        key: Facility-unique key (job id, or ``<job id>#retry``).
        callback: Coroutine factory invoked on each firing.
        next_fire: Next firing instant (aware UTC).
        expression: Cron expression, ``None`` for one-shot triggers.
        timezone: Zone the expression is evaluated in.
        armed: ``False`` once disarmed or (one-shot) fired.
        fire_count: Number of times the trigger has fired.
    """

    key: str
    callback: TriggerCallback
    next_fire: datetime
    expression: Optional[str] = None
    timezone: str = "UTC"
    armed: bool = True
    fire_count: int = 0
    armed_at: datetime = field(default_factory=utc_now)

    @property
    def one_shot(self) -> bool:
        return self.expression is None


# =============================================================================
# TRIGGER FACILITY
# =============================================================================


class TriggerFacility:
    """Single shared facility that fires armed triggers.

    Args:
        tick_seconds: Longest the loop sleeps between due-checks.
        clock: Returns the current aware UTC time (injectable for tests).
    """

    def __init__(
        self,
        tick_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.tick_seconds = tick_seconds
        self.clock = clock
        self._triggers: Dict[str, TriggerHandle] = {}
        self._in_flight: Set["asyncio.Task[None]"] = set()
        self._wakeup: Optional[asyncio.Event] = None
        self._running: bool = False
        self._stop_requested: bool = False

    # ================================================================
    # ARMING
    # ================================================================

    def arm_cron(
        self,
        key: str,
        expression: str,
        tz_name: str,
        callback: TriggerCallback,
    ) -> TriggerHandle:
        """Arm a recurring cron trigger. Replaces any trigger with ``key``.

        Raises:
            InvalidCronPattern: If the expression cannot be parsed.
            InvalidTimeSpec: If the timezone is unknown.
        """
        validate_cron_pattern(expression)
        handle = TriggerHandle(
            key=key,
            callback=callback,
            next_fire=next_fire_time(expression, tz_name, self.clock()),
            expression=expression,
            timezone=tz_name,
        )
        self._install(handle)
        logger.debug(
            "[TRIGGER] Armed %s (%s %s), next fire %s",
            key,
            expression,
            tz_name,
            handle.next_fire.isoformat(),
        )
        return handle

    def arm_at(self, key: str, when: datetime, callback: TriggerCallback) -> TriggerHandle:
        """Arm a one-shot trigger firing at ``when``. Replaces any trigger with ``key``."""
        handle = TriggerHandle(key=key, callback=callback, next_fire=ensure_utc(when))
        self._install(handle)
        logger.debug("[TRIGGER] Armed one-shot %s at %s", key, handle.next_fire.isoformat())
        return handle

    def disarm(self, handle: Optional[TriggerHandle]) -> bool:
        """Disarm a trigger. Returns ``False`` if it was not armed."""
        if handle is None or not handle.armed:
            return False
        handle.armed = False
        if self._triggers.get(handle.key) is handle:
            del self._triggers[handle.key]
        logger.debug("[TRIGGER] Disarmed %s", handle.key)
        return True

    def disarm_all(self) -> int:
        """Disarm every trigger. Returns how many were armed."""
        handles = list(self._triggers.values())
        for handle in handles:
            self.disarm(handle)
        return len(handles)

    def get(self, key: str) -> Optional[TriggerHandle]:
        return self._triggers.get(key)

    @property
    def armed_count(self) -> int:
        return len(self._triggers)

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def _install(self, handle: TriggerHandle) -> None:
        previous = self._triggers.get(handle.key)
        if previous is not None:
            self.disarm(previous)
        self._triggers[handle.key] = handle
        if self._wakeup is not None:
            self._wakeup.set()

    # ================================================================
    # FIRING
    # ================================================================

    def fire_due(self, now: Optional[datetime] = None) -> List[TriggerHandle]:
        """Dispatch every trigger due at ``now`` onto its own task.

        Must be called from a running event loop. Never awaits a job.

        Returns:
            The triggers that fired.
        """
        now = ensure_utc(now or self.clock())
        due = [h for h in self._triggers.values() if h.next_fire <= now]
        for handle in due:
            handle.fire_count += 1
            if handle.one_shot:
                self.disarm(handle)
            else:
                handle.next_fire = next_fire_time(handle.expression, handle.timezone, now)

            task = asyncio.create_task(self._invoke(handle), name=f"trigger:{handle.key}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        return due

    async def _invoke(self, handle: TriggerHandle) -> None:
        try:
            await handle.callback()
        except asyncio.CancelledError:
            logger.info("[TRIGGER] Firing of %s cancelled", handle.key)
            raise
        except Exception:
            logger.exception("[TRIGGER] Unhandled error in firing of %s", handle.key)

    async def join(self) -> None:
        """Wait for every in-flight firing to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def _seconds_until_next(self, now: datetime) -> float:
        if not self._triggers:
            return self.tick_seconds
        earliest = min(h.next_fire for h in self._triggers.values())
        return max(0.0, min((earliest - now).total_seconds(), self.tick_seconds))

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run the firing loop until :meth:`stop` is called."""
        if self._stop_requested:
            return
        self._running = True
        self._wakeup = asyncio.Event()
        logger.info(
            "[TRIGGER] Trigger facility started (tick=%.1fs, armed=%d)",
            self.tick_seconds,
            self.armed_count,
        )

        while self._running:
            try:
                self.fire_due()
            except Exception:
                logger.exception("[TRIGGER] Unexpected error in trigger loop")

            delay = self._seconds_until_next(self.clock())
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                logger.info("[TRIGGER] Trigger facility cancelled")
                break
            self._wakeup.clear()

        logger.info("[TRIGGER] Trigger facility stopped")

    async def stop(self) -> None:
        """Stop the loop after its current iteration. In-flight firings continue."""
        self._stop_requested = True
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()
        logger.info("[TRIGGER] Trigger facility stop requested")


def is_past_due(expression: str, tz_name: str, scheduled: datetime, now: datetime) -> bool:
    """Whether a pinned one-off expression would miss ``scheduled``.

    True when the scheduled minute has already passed at ``now``, so the
    expression would only match again a year later. A naive ``scheduled``
    is wall time in ``tz_name``, as in :func:`to_cron_expression`.
    """
    fire = next_fire_time(expression, tz_name, now)
    scheduled_utc = ensure_utc(localize(scheduled, tz_name))
    return fire > scheduled_utc.replace(second=0, microsecond=0) + timedelta(minutes=1)


__all__ = [
    "load_timezone",
    "parse_timestamp",
    "localize",
    "to_cron_expression",
    "validate_cron_pattern",
    "next_fire_time",
    "is_past_due",
    "TriggerHandle",
    "TriggerFacility",
]
