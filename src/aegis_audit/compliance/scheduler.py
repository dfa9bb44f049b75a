"""Automated Check Scheduler - periodic sweep over due compliance checks."""

import logging
import re
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from aegis_audit.common.clock import Clock, SystemClock
from aegis_audit.common.constants import ScheduleConstants
from aegis_audit.compliance.checks import CheckExecutor
from aegis_audit.compliance.rules import ComplianceRuleEngine
from aegis_audit.compliance.schemas import AutomatedCheck, CheckResult, ComplianceRule

logger = logging.getLogger(__name__)


NAMED_SCHEDULES = {
    "continuous": ScheduleConstants.CONTINUOUS_SECONDS,
    "hourly": ScheduleConstants.HOURLY_SECONDS,
    "daily": ScheduleConstants.DAILY_SECONDS,
    "weekly": ScheduleConstants.WEEKLY_SECONDS,
    "monthly": ScheduleConstants.MONTHLY_SECONDS,
    "quarterly": ScheduleConstants.QUARTERLY_SECONDS,
    "annually": ScheduleConstants.ANNUALLY_SECONDS,
}

_INTERVAL_PATTERN = re.compile(r"^every\s+(\d+)\s*([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_schedule(schedule: str) -> timedelta:
    """Interval for a schedule string.

    Accepts the named schedules above or "every <n><s|m|h|d>", e.g.
    "every 30m". Anything else falls back to daily.
    """
    text = (schedule or "").strip().lower()
    if text in NAMED_SCHEDULES:
        return timedelta(seconds=NAMED_SCHEDULES[text])

    match = _INTERVAL_PATTERN.match(text)
    if match and int(match.group(1)) > 0:
        return timedelta(seconds=int(match.group(1)) * _UNIT_SECONDS[match.group(2)])

    logger.warning(f"Unrecognized schedule '{schedule}', defaulting to daily")
    return timedelta(seconds=ScheduleConstants.DAILY_SECONDS)


FailureCallback = Callable[[ComplianceRule, AutomatedCheck, CheckResult], None]


class AutomatedCheckScheduler:
    """Runs due automated checks and records their outcome on the check."""

    def __init__(
        self,
        rules: ComplianceRuleEngine,
        executor: CheckExecutor,
        clock: Optional[Clock] = None,
        on_failure: Optional[FailureCallback] = None,
    ):
        """Initialize scheduler.

        Args:
            rules: Source of checks; saved after every sweep
            executor: Runs a check with timeout and retries
            clock: Time source for due dates
            on_failure: Called for every failed check (the service logs a
                compliance event)
        """
        self.rules = rules
        self.executor = executor
        self.clock = clock or SystemClock()
        self.on_failure = on_failure
        self._sweep_lock = threading.Lock()

    def due(self, now: datetime) -> List[Tuple[ComplianceRule, AutomatedCheck]]:
        return [
            (rule, check) for rule, check in self.rules.iter_checks()
            if check.enabled and (check.next_execution is None or check.next_execution <= now)
        ]

    def run_check(self, rule: ComplianceRule, check: AutomatedCheck,
                  now: Optional[datetime] = None) -> CheckResult:
        """Execute one check and update its counters and next_execution."""
        now = now or self.clock.now()
        result = self.executor.run(check)

        check.last_executed = now
        check.execution_count += 1
        if result.success:
            check.success_count += 1
        else:
            check.failure_count += 1
        check.next_execution = now + parse_schedule(check.schedule)

        if not result.success:
            logger.warning(f"Automated check {check.id} ({rule.id}) failed: {result.message}")
            if self.on_failure is not None:
                try:
                    self.on_failure(rule, check, result)
                except Exception as e:
                    logger.error(f"Failure handler for check {check.id} raised: {e}")
        return result

    def sweep(self) -> List[Tuple[AutomatedCheck, CheckResult]]:
        """Run every due check once. Check failures never escape.

        Returns:
            (check, result) for each check that ran
        """
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("Compliance sweep already running; skipping")
            return []

        try:
            now = self.clock.now()
            due = self.due(now)
            results = []
            for rule, check in due:
                results.append((check, self.run_check(rule, check, now)))

            if results:
                self.rules.save()
                failed = sum(1 for _, r in results if not r.success)
                logger.info(f"Compliance sweep ran {len(results)} checks ({failed} failed)")
            return results
        finally:
            self._sweep_lock.release()
