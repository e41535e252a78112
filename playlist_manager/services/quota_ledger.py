"""YouTube API quota ledger with daily Pacific-time rollover.

Tracks quota units consumed per calendar day against a fixed daily budget.
One row per (day, scope) where scope is "global" (every call) or a user id.

Architecture Pattern:
    - Explicit instance over an injected AsyncEngine (no module-level counters)
    - Day key: calendar date in America/Los_Angeles, one rollover instant per day
    - Blind additive upsert: concurrent writers accumulate, never overwrite
    - Self-maintenance: prune rows past the retention window, compact storage
      every few days; throttled to once per hour per ledger instance
    - Alert thresholds: 80% warning, 100% critical (global scope)

Usage:
    ledger = QuotaLedger(engine)
    await ledger.record_call_cost(150, user_id="user-1")
    snapshot = await ledger.get_today_quota("user-1")
    snapshot.remain  # 9850
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import delete, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from playlist_manager.config import (
    get_daily_budget,
    get_retention_days,
    get_vacuum_interval_days,
)
from playlist_manager.constants import GLOBAL_SCOPE, QUOTA_TIMEZONE
from playlist_manager.database import dialect_insert
from playlist_manager.models import QUOTA_TABLES, Base, QuotaMeta, QuotaUsage, utcnow
from playlist_manager.utils.alerts import send_alert
from playlist_manager.utils.logging import get_logger

log = get_logger(__name__)

ROLLOVER_TZ = ZoneInfo(QUOTA_TIMEZONE)

# Maintenance runs at most once per this interval, regardless of call volume
MAINTENANCE_THROTTLE = timedelta(hours=1)

META_LAST_PRUNE = "last_prune_date"
META_LAST_VACUUM = "last_vacuum_date"

# Alert thresholds (fraction of the daily budget)
QUOTA_WARNING_THRESHOLD = 0.80
QUOTA_CRITICAL_THRESHOLD = 1.00


@dataclass(frozen=True)
class QuotaSnapshot:
    """Today's quota position as reported to clients.

    Attributes:
        used: Units used today (user scope if it has usage, else global)
        remain: max(0, budget - used)
        budget: Daily budget in units
        reset_at: Next rollover instant, tz-aware in the rollover timezone
    """

    used: int
    remain: int
    budget: int
    reset_at: datetime


@dataclass(frozen=True)
class MaintenanceReport:
    """What a maintenance sweep did."""

    pruned_rows: int
    vacuumed: bool


class QuotaLedger:
    """Persistent daily quota usage per scope.

    Args:
        engine: Async engine of the quota store.
        daily_budget: Units per day (default: DAILY_BUDGET env, 10000).
        retention_days: Days of history kept (default: RETENTION_DAYS env, 35).
        vacuum_interval_days: Days between compactions (default: VACUUM_INTERVAL_DAYS env, 7).
        clock: Returns the current tz-aware instant. Injected by tests.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        daily_budget: int | None = None,
        retention_days: int | None = None,
        vacuum_interval_days: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.daily_budget = daily_budget if daily_budget is not None else get_daily_budget()
        self.retention_days = (
            retention_days if retention_days is not None else get_retention_days()
        )
        self.vacuum_interval_days = (
            vacuum_interval_days if vacuum_interval_days is not None else get_vacuum_interval_days()
        )
        self.clock = clock
        self._schema_ready = False
        self._last_maintenance_at: datetime | None = None
        # (day, level) pairs already alerted
        self._alerted: set[tuple[date, str]] = set()

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    # ------------------------------------------------------------------
    # Day keys
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        now = self.clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def day_key(self, at: datetime | None = None) -> date:
        """Calendar date of `at` (default: now) in the rollover timezone.

        Naive datetimes are treated as UTC (SQLite returns naive timestamps).
        """
        moment = at if at is not None else self._now()
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(ROLLOVER_TZ).date()

    def next_reset_at(self, at: datetime | None = None) -> datetime:
        """Next local midnight in the rollover timezone.

        The UTC offset of the returned datetime is the one in force at that
        midnight, so DST changes are reflected (-07:00 in summer, -08:00 in winter).
        """
        next_day = self.day_key(at) + timedelta(days=1)
        return datetime.combine(next_day, time.min, tzinfo=ROLLOVER_TZ)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def ensure_schema(self) -> None:
        """Create the quota tables if missing and tune SQLite storage.

        Safe to call repeatedly; the work is done once per ledger instance.
        """
        if self._schema_ready:
            return

        if self.dialect_name == "sqlite":
            await self._apply_sqlite_pragmas()

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all, tables=QUOTA_TABLES)

        self._schema_ready = True

    async def _apply_sqlite_pragmas(self) -> None:
        # WAL improves read concurrency; NORMAL reduces fsyncs
        try:
            async with self.engine.connect() as conn:
                conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                await conn.execute(text("PRAGMA journal_mode = WAL"))
                await conn.execute(text("PRAGMA synchronous = NORMAL"))
                await conn.execute(text("PRAGMA temp_store = MEMORY"))
        except SQLAlchemyError as e:
            # Read-only or restricted environments
            log.warning("quota_pragmas_not_applied", error=str(e))

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def record_usage(self, scope: str, units: int, day: date | None = None) -> None:
        """Add units to the (day, scope) counter.

        Blind additive upsert: concurrent increments to the same key
        accumulate. No-op when units <= 0. Runs throttled maintenance
        afterwards.

        Args:
            scope: "global" or a user id.
            units: Quota units to add (floored to an integer).
            day: Day key (default: today in the rollover timezone).
        """
        delta = max(0, int(units or 0))
        if not delta:
            return

        await self.ensure_schema()
        day = day or self.day_key()

        async with self.engine.begin() as conn:
            await self._increment(conn, day, scope, delta)

        log.debug("quota_usage_recorded", scope=scope, day=day.isoformat(), units=delta)

        await self.maintain()

    async def _increment(self, conn: AsyncConnection, day: date, scope: str, delta: int) -> None:
        table = QuotaUsage.__table__
        stmt = dialect_insert(self.dialect_name, table).values(
            date_key=day, scope=scope, used=delta
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.date_key, table.c.scope],
            set_={"used": table.c.used + stmt.excluded.used},
        )
        await conn.execute(stmt)

    async def record_call_cost(
        self, units: int, user_id: str | None = None, day: date | None = None
    ) -> None:
        """Record remote call cost under the global scope and the user's scope.

        Triggers budget alerts at 80% (warning) and 100% (critical) of the
        global counter, once per level per day.
        """
        delta = max(0, int(units or 0))
        if not delta:
            return

        day = day or self.day_key()
        await self.record_usage(GLOBAL_SCOPE, delta, day)
        if user_id:
            await self.record_usage(user_id, delta, day)

        log.info(
            "quota_call_cost_recorded",
            user_id=user_id,
            day=day.isoformat(),
            units=delta,
        )

        await self._check_alert_thresholds(day)

    async def get_usage(self, day: date, scope: str) -> int:
        """Units recorded for (day, scope), 0 when no row exists."""
        await self.ensure_schema()
        async with self.engine.connect() as conn:
            result = await conn.execute(
                select(QuotaUsage.used).where(
                    QuotaUsage.date_key == day,
                    QuotaUsage.scope == scope,
                )
            )
            used = result.scalar_one_or_none()
        return used or 0

    async def get_today_quota(self, user_id: str | None = None) -> QuotaSnapshot:
        """Today's usage, remaining budget and next reset.

        `used` is the user's own counter when it is positive, otherwise the
        global counter. A user with no tracked usage today therefore sees the
        shared counter.
        """
        now = self._now()
        day = self.day_key(now)

        global_used = await self.get_usage(day, GLOBAL_SCOPE)
        user_used = await self.get_usage(day, user_id) if user_id else 0
        used = user_used if user_used > 0 else global_used

        return QuotaSnapshot(
            used=used,
            remain=max(0, self.daily_budget - used),
            budget=self.daily_budget,
            reset_at=self.next_reset_at(now),
        )

    async def _check_alert_thresholds(self, day: date) -> None:
        used = await self.get_usage(day, GLOBAL_SCOPE)
        percentage = used / self.daily_budget if self.daily_budget > 0 else 0

        if percentage >= QUOTA_CRITICAL_THRESHOLD:
            level = "CRITICAL"
            message = "YouTube quota exhausted"
        elif percentage >= QUOTA_WARNING_THRESHOLD:
            level = "WARNING"
            message = f"YouTube quota at {percentage * 100:.0f}%"
        else:
            return

        if (day, level) in self._alerted:
            return
        self._alerted.add((day, level))

        log.warning(
            "quota_threshold_reached",
            level=level,
            used=used,
            budget=self.daily_budget,
            percentage=f"{percentage * 100:.1f}%",
        )
        await send_alert(
            level=level,
            message=message,
            details={
                "day": day.isoformat(),
                "used": used,
                "budget": self.daily_budget,
                "reset_at": self.next_reset_at().isoformat(),
            },
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def maintain(self) -> bool:
        """Run prune + compaction at most once per hour of wall-clock time.

        Returns:
            True if a sweep ran, False if throttled.
        """
        now = self._now()
        if (
            self._last_maintenance_at is not None
            and now - self._last_maintenance_at < MAINTENANCE_THROTTLE
        ):
            return False
        self._last_maintenance_at = now

        await self.run_maintenance()
        return True

    async def run_maintenance(
        self,
        retention_days: int | None = None,
        vacuum_interval_days: int | None = None,
    ) -> MaintenanceReport:
        """Prune expired rows and compact storage if due. Not throttled.

        A failing step is logged and retried on the next sweep; it never
        propagates to the caller.
        """
        await self.ensure_schema()

        pruned = 0
        try:
            pruned = await self.prune_old_usage(
                retention_days if retention_days is not None else self.retention_days
            )
        except SQLAlchemyError as e:
            log.warning("quota_prune_failed", error=str(e))

        vacuumed = False
        try:
            vacuumed = await self.maybe_vacuum(
                vacuum_interval_days
                if vacuum_interval_days is not None
                else self.vacuum_interval_days
            )
        except SQLAlchemyError as e:
            log.warning("quota_vacuum_failed", error=str(e))

        log.info("quota_maintenance_completed", pruned_rows=pruned, vacuumed=vacuumed)
        return MaintenanceReport(pruned_rows=pruned, vacuumed=vacuumed)

    async def prune_old_usage(self, retention_days: int) -> int:
        """Delete usage rows older than the retention window.

        Returns:
            Number of rows deleted.
        """
        today = self.day_key()
        cutoff = today - timedelta(days=max(0, int(retention_days)))

        async with self.engine.begin() as conn:
            result = await conn.execute(delete(QuotaUsage).where(QuotaUsage.date_key < cutoff))
            await self._set_meta(conn, META_LAST_PRUNE, today.isoformat())

        return result.rowcount or 0

    async def maybe_vacuum(self, interval_days: int) -> bool:
        """Compact the quota store if the last compaction is interval_days old.

        Returns:
            True if compaction ran.
        """
        today = self.day_key()
        last = await self.get_meta(META_LAST_VACUUM)
        if last is not None:
            try:
                elapsed = (today - date.fromisoformat(last)).days
            except ValueError:
                elapsed = interval_days
            if elapsed < interval_days:
                return False

        statement = self._vacuum_statement()
        if statement is None:
            log.info("quota_vacuum_unsupported", dialect=self.dialect_name)
            return False

        # VACUUM cannot run inside a transaction
        async with self.engine.connect() as conn:
            conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
            await conn.execute(text(statement))

        async with self.engine.begin() as conn:
            await self._set_meta(conn, META_LAST_VACUUM, today.isoformat())

        log.info("quota_store_vacuumed", dialect=self.dialect_name)
        return True

    def _vacuum_statement(self) -> str | None:
        if self.dialect_name == "sqlite":
            return "VACUUM"
        if self.dialect_name == "postgresql":
            return "VACUUM (ANALYZE) quota_usage"
        return None

    async def get_meta(self, key: str) -> str | None:
        await self.ensure_schema()
        async with self.engine.connect() as conn:
            result = await conn.execute(select(QuotaMeta.value).where(QuotaMeta.key == key))
            return result.scalar_one_or_none()

    async def _set_meta(self, conn: AsyncConnection, key: str, value: str) -> None:
        table = QuotaMeta.__table__
        stmt = dialect_insert(self.dialect_name, table).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.key],
            set_={"value": stmt.excluded.value},
        )
        await conn.execute(stmt)
