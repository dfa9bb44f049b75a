"""Automated check execution.

The executor maps each CheckType to a handler. A handler receives the
check and returns a CheckResult; raising CheckExecutionError (or any
other exception) counts as a failed attempt. Each attempt is bounded by
the check's timeout and a check gets 1 + retry_count attempts.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from aegis_audit.audit.schemas import AuditEvent, SearchFilters
from aegis_audit.common.clock import Clock, SystemClock
from aegis_audit.common.exceptions import CheckExecutionError
from aegis_audit.compliance.rules import MISSING, resolve_path
from aegis_audit.compliance.schemas import AutomatedCheck, CheckResult, CheckType

logger = logging.getLogger(__name__)


CheckHandler = Callable[[AutomatedCheck], CheckResult]
ScriptCallable = Callable[[Dict[str, Any]], Union[bool, CheckResult]]
SearchFunction = Callable[[str, Optional[SearchFilters]], List[AuditEvent]]
MetricsSource = Callable[[], Dict[str, float]]

# Parameters interpreted by the handlers rather than matched against events
_CONTROL_PARAMETERS = {"window_seconds", "min_count", "max_count", "max_matches"}


class CheckExecutor:
    """Runs automated checks with per-check timeout and retries."""

    DEFAULT_WINDOW_SECONDS = 24 * 60 * 60

    def __init__(
        self,
        search: SearchFunction,
        metrics_source: Optional[MetricsSource] = None,
        clock: Optional[Clock] = None,
        http_client: Optional[httpx.Client] = None,
        max_workers: int = 4,
    ):
        """Initialize executor.

        Args:
            search: Event search used by query and log_analysis checks
            metrics_source: Snapshot of named metric values for
                metric_threshold checks
            clock: Time source for analysis windows
            http_client: Client for api_call checks
            max_workers: Threads available to run check attempts
        """
        self.search = search
        self.metrics_source = metrics_source or dict
        self.clock = clock or SystemClock()
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ComplianceCheck")

        self._scripts: Dict[str, ScriptCallable] = {}
        self._handlers: Dict[CheckType, CheckHandler] = {
            CheckType.QUERY: self._run_query,
            CheckType.SCRIPT: self._run_script,
            CheckType.API_CALL: self._run_api_call,
            CheckType.LOG_ANALYSIS: self._run_log_analysis,
            CheckType.METRIC_THRESHOLD: self._run_metric_threshold,
        }

    def register_script(self, name: str, fn: ScriptCallable) -> None:
        """Make a callable available to script checks by name."""
        self._scripts[name] = fn

    def register_handler(self, check_type: CheckType, handler: CheckHandler) -> None:
        """Replace the handler for a check type."""
        self._handlers[check_type] = handler

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, check: AutomatedCheck) -> CheckResult:
        """Run one attempt, bounded by check.timeout. Never raises."""
        handler = self._handlers.get(check.type)
        if handler is None:
            return CheckResult(success=False, message=f"No handler for check type {check.type.value}")

        future = self._pool.submit(handler, check)
        try:
            result = future.result(timeout=check.timeout)
        except FutureTimeoutError:
            # The worker thread cannot be interrupted; its result is discarded
            future.cancel()
            logger.warning(f"Check {check.id} timed out after {check.timeout}s")
            return CheckResult(success=False, message=f"Timed out after {check.timeout}s")
        except CheckExecutionError as e:
            logger.warning(f"Check {check.id} could not be evaluated: {e.message}")
            return CheckResult(success=False, message=e.message)
        except Exception as e:
            logger.error(f"Check {check.id} raised: {e}", exc_info=True)
            return CheckResult(success=False, message=f"{type(e).__name__}: {e}")

        if not isinstance(result, CheckResult):
            return CheckResult(success=bool(result))
        return result

    def run(self, check: AutomatedCheck) -> CheckResult:
        """Run a check with up to retry_count extra attempts."""
        result = CheckResult(success=False, message="not executed")
        for attempt in range(1 + check.retry_count):
            result = self.execute(check)
            if result.success:
                return result
            if attempt < check.retry_count:
                logger.info(f"Retrying check {check.id} (attempt {attempt + 2}/{1 + check.retry_count})")
        return result

    def close(self) -> None:
        self._pool.shutdown(wait=False)
        if self._owns_http_client and self._http_client is not None:
            self._http_client.close()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _window_events(self, check: AutomatedCheck, query: str = "",
                       filters: Optional[SearchFilters] = None) -> List[AuditEvent]:
        window = check.parameters.get("window_seconds", self.DEFAULT_WINDOW_SECONDS)
        filters = filters or SearchFilters()
        if window:
            filters = filters.model_copy(update={
                "start_date": self.clock.now() - timedelta(seconds=float(window))
            })
        return self.search(query, filters)

    def _run_query(self, check: AutomatedCheck) -> CheckResult:
        """Count matching events; succeed when min_count <= count <= max_count."""
        params = check.parameters
        filter_fields = set(SearchFilters.model_fields)
        filters = SearchFilters.model_validate(
            {k: v for k, v in params.items() if k in filter_fields}
        )
        extra = {
            k: v for k, v in params.items()
            if k not in filter_fields and k not in _CONTROL_PARAMETERS
        }

        events = self._window_events(check, check.implementation, filters)
        if extra:
            events = [e for e in events if _fields_equal(e, extra)]

        count = len(events)
        min_count = params.get("min_count", 0)
        max_count = params.get("max_count")
        success = count >= min_count and (max_count is None or count <= max_count)
        return CheckResult(
            success=success,
            value=float(count),
            message=f"{count} matching events",
            details={"min_count": min_count, "max_count": max_count},
        )

    def _run_log_analysis(self, check: AutomatedCheck) -> CheckResult:
        """Count events mentioning the pattern; succeed when count <= max_matches."""
        pattern = check.implementation
        if not pattern:
            raise CheckExecutionError("log_analysis check needs a pattern", check.id)

        count = len(self._window_events(check, pattern))
        max_matches = check.parameters.get("max_matches", 0)
        return CheckResult(
            success=count <= max_matches,
            value=float(count),
            message=f"{count} events matched '{pattern}'",
        )

    def _run_metric_threshold(self, check: AutomatedCheck) -> CheckResult:
        snapshot = self.metrics_source()
        metric = check.implementation
        if metric not in snapshot:
            raise CheckExecutionError(f"Unknown metric: {metric}", check.id)
        if "threshold" not in check.parameters:
            raise CheckExecutionError("metric_threshold check needs a threshold", check.id)

        value = float(snapshot[metric])
        threshold = float(check.parameters["threshold"])
        if check.parameters.get("direction", "below") == "above":
            success = value >= threshold
        else:
            success = value <= threshold
        return CheckResult(
            success=success,
            value=value,
            message=f"{metric}={value} (threshold {threshold})",
        )

    def _run_api_call(self, check: AutomatedCheck) -> CheckResult:
        if self._http_client is None:
            self._http_client = httpx.Client()
        params = check.parameters
        try:
            response = self._http_client.request(
                params.get("method", "GET"),
                check.implementation,
                headers=params.get("headers"),
                json=params.get("body"),
                timeout=check.timeout,
            )
        except httpx.HTTPError as e:
            raise CheckExecutionError(f"API call failed: {e}", check.id) from e

        expected = params.get("expected_status")
        if expected is not None:
            success = response.status_code == int(expected)
        else:
            success = response.is_success
        return CheckResult(
            success=success,
            value=float(response.status_code),
            message=f"HTTP {response.status_code}",
        )

    def _run_script(self, check: AutomatedCheck) -> Union[bool, CheckResult]:
        fn = self._scripts.get(check.implementation)
        if fn is None:
            raise CheckExecutionError(f"Script not registered: {check.implementation}", check.id)
        return fn(check.parameters)


def _fields_equal(event: AuditEvent, expected: Dict[str, Any]) -> bool:
    document = event.model_dump(mode="json")
    for path, value in expected.items():
        actual = resolve_path(document, path)
        if actual is MISSING or str(actual) != str(value):
            return False
    return True

