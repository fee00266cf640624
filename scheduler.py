"""
============================================================
FLOW-PRESSURE v1.0 - Polling Scheduler
============================================================
Runs the background jobs that keep entities current.

Jobs (interval from settings):
1. pressure    - StockPressure refresh for the watchlist
2. semantic    - SemanticPressure refresh + SPI swing alerts
3. opportunity - expire old records, scan events + opportunity alerts
4. auto_exit   - close SimulatedTrades whose flow reversed
5. orders      - evaluate PENDING advanced orders
6. account     - revalue the paper account

Usage:
    # Polling mode (runs until Ctrl+C)
    python scheduler.py scheduled

    # One cycle of every job
    python scheduler.py once

    # Pressure + semantic refresh for one symbol
    python scheduler.py symbol AAPL

    # Test mode (three symbols, no pauses, no alerts)
    python scheduler.py test

Error Handling:
- A failing job is logged (and written to ErrorLog); the loop continues
- Per-symbol failures are reported inside each job result
============================================================
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import schedule

from advanced_orders import AdvancedOrderEngine
from alerts import send_alerts, send_error_alert
from auto_exit import check_and_exit
from config import get_logger, get_settings
from entity_store import EntityStore, get_store, log_error
from manual_trading import ManualTrader
from opportunity_scanner import cleanup_expired, scan_opportunities
from portfolio import PaperAccount
from pressure_index import run_pressure_calculator
from semantic_pressure import run_semantic_analysis

logger = get_logger(__name__)
settings = get_settings()


# ──────────────────────────────────────────────────────────
# DATA SCHEMAS
# ──────────────────────────────────────────────────────────


@dataclass
class JobResult:
    """
    Outcome of one job run.

    Attributes:
        job: Job name.
        success: False only when the job raised.
        message: Human-readable summary.
        execution_time_seconds: Runtime.
        details: Job-specific counters.
        error: Exception text on failure.
    """

    job: str
    success: bool
    message: str
    execution_time_seconds: float
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class CycleResult:
    cycle_start_utc: str
    cycle_end_utc: str
    jobs: List[JobResult]

    @property
    def failed(self) -> List[JobResult]:
        return [j for j in self.jobs if not j.success]

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "failed": [j.job for j in self.failed]}


# ──────────────────────────────────────────────────────────
# JOBS
# ──────────────────────────────────────────────────────────


def run_job(name: str, fn: Callable[[], Dict[str, Any]], store: Optional[EntityStore] = None) -> JobResult:
    """Run ``fn`` and turn any exception into a failed JobResult."""
    t0 = time.time()
    try:
        details = fn() or {}
        elapsed = time.time() - t0
        logger.info("Job %s finished in %.1fs: %s", name, elapsed, details)
        return JobResult(
            job=name,
            success=True,
            message=f"{name} completed",
            execution_time_seconds=elapsed,
            details=details,
        )
    except Exception as exc:  # noqa: BLE001
        elapsed = time.time() - t0
        logger.error("Job %s failed: %s", name, exc, exc_info=True)
        if store is not None:
            try:
                log_error(store, "scheduler", f"Job {name} failed: {exc}", "HIGH")
            except Exception as log_exc:  # noqa: BLE001
                logger.error("Could not record job failure: %s", log_exc)
        return JobResult(
            job=name,
            success=False,
            message=f"{name} failed",
            execution_time_seconds=elapsed,
            error=str(exc),
        )


def pressure_job(store: EntityStore, symbols: List[str], pause_seconds: Optional[float] = None) -> Dict[str, Any]:
    kwargs = {} if pause_seconds is None else {"pause_seconds": pause_seconds}
    result = run_pressure_calculator(store, symbols, **kwargs)
    return {**result.stats, "market_avg_pressure": result.market_avg_pressure}


def semantic_job(
    store: EntityStore,
    symbols: List[str],
    pause_seconds: Optional[float] = None,
    send: bool = True,
) -> Dict[str, Any]:
    result = run_semantic_analysis(store, symbols, pause_seconds=pause_seconds)
    if send and result["alerts"]:
        send_alerts("SPI", result["alerts"], store=store)
    return result["stats"]


def opportunity_job(store: EntityStore, pause_seconds: Optional[float] = None, send: bool = True) -> Dict[str, Any]:
    expired = cleanup_expired(store)
    kwargs = {} if pause_seconds is None else {"pause_seconds": pause_seconds}
    result = scan_opportunities(store, **kwargs)
    if send and result.alerts:
        send_alerts("OPPORTUNITY", result.alerts, store=store)
    return {**result.stats, "expired_removed": expired}


def auto_exit_job(store: EntityStore) -> Dict[str, Any]:
    exits = check_and_exit(store)
    return {"exits": len(exits), "symbols": [e.symbol for e in exits]}


def orders_job(store: EntityStore) -> Dict[str, Any]:
    result = AdvancedOrderEngine(store).check_orders()
    statuses: Dict[str, int] = {}
    for row in result.results:
        statuses[row["status"]] = statuses.get(row["status"], 0) + 1
    return {"checked": result.checked, **statuses}


def account_job(store: EntityStore) -> Dict[str, Any]:
    account = PaperAccount(store)
    if account.get_account(create=False) is None:
        return {"skipped": "no account"}
    valuation = account.update_account_value()
    if not valuation.success:
        raise RuntimeError(valuation.error or "account revaluation failed")
    return {"total_value": valuation.total_value, "sync_error": valuation.sync_error}


# ──────────────────────────────────────────────────────────
# CYCLE ORCHESTRATION
# ──────────────────────────────────────────────────────────


def watched_symbols(store: EntityStore) -> List[str]:
    return ManualTrader(store).watchlist()


def run_cycle(
    store: Optional[EntityStore] = None,
    symbols: Optional[List[str]] = None,
    pause_seconds: Optional[float] = None,
    send_alerts_enabled: bool = True,
) -> CycleResult:
    """
    Run every job once, in order.

    Args:
        store: Entity store (process store by default).
        symbols: Symbols to refresh (watchlist by default).
        pause_seconds: Per-symbol pause override for the refresh jobs.
        send_alerts_enabled: Deliver SPI swing and opportunity alerts.
    """
    store = store or get_store()
    start = datetime.now(timezone.utc)
    symbol_list = symbols if symbols is not None else watched_symbols(store)

    logger.info("=" * 70)
    logger.info("CYCLE STARTED @ %s (%d symbols)", start.isoformat(), len(symbol_list))

    jobs = [
        run_job("pressure", lambda: pressure_job(store, symbol_list, pause_seconds), store),
        run_job(
            "semantic",
            lambda: semantic_job(store, symbol_list, pause_seconds, send=send_alerts_enabled),
            store,
        ),
        run_job(
            "opportunity",
            lambda: opportunity_job(store, pause_seconds, send=send_alerts_enabled),
            store,
        ),
        run_job("auto_exit", lambda: auto_exit_job(store), store),
        run_job("orders", lambda: orders_job(store), store),
        run_job("account", lambda: account_job(store), store),
    ]

    result = CycleResult(
        cycle_start_utc=start.isoformat(),
        cycle_end_utc=datetime.now(timezone.utc).isoformat(),
        jobs=jobs,
    )
    if result.failed:
        logger.warning("Cycle finished with %d failed job(s): %s", len(result.failed), [j.job for j in result.failed])
    logger.info("CYCLE COMPLETED")
    logger.info("=" * 70)
    return result


def register_jobs(store: EntityStore, scheduler: Optional[schedule.Scheduler] = None) -> schedule.Scheduler:
    """Attach every job to ``scheduler`` at its configured interval."""
    sched = scheduler or schedule.Scheduler()

    sched.every(settings.pressure_interval_seconds).seconds.do(
        run_job, "pressure", lambda: pressure_job(store, watched_symbols(store)), store
    )
    sched.every(settings.semantic_interval_seconds).seconds.do(
        run_job, "semantic", lambda: semantic_job(store, watched_symbols(store)), store
    )
    sched.every(settings.opportunity_interval_seconds).seconds.do(
        run_job, "opportunity", lambda: opportunity_job(store), store
    )
    sched.every(settings.auto_exit_interval_seconds).seconds.do(
        run_job, "auto_exit", lambda: auto_exit_job(store), store
    )
    sched.every(settings.order_check_interval_seconds).seconds.do(
        run_job, "orders", lambda: orders_job(store), store
    )
    sched.every(settings.account_interval_seconds).seconds.do(
        run_job, "account", lambda: account_job(store), store
    )
    return sched


# ──────────────────────────────────────────────────────────
# SCHEDULER MODES
# ──────────────────────────────────────────────────────────


def start_scheduler(mode: str = "scheduled", **kwargs: Any) -> Optional[CycleResult]:
    """
    Start the scheduler in a given mode.

    Modes:
        - scheduled: Poll every job at its interval until interrupted.
        - once: Run a single cycle immediately.
        - symbol: Pressure + semantic refresh for one symbol.
        - test: Small cycle without pauses or alerts.
    """
    logger.info("Starting FLOW-PRESSURE Scheduler (mode=%s).", mode)
    store = kwargs.get("store") or get_store()

    if mode == "scheduled":
        sched = register_jobs(store)
        logger.info("Registered %d jobs. Press Ctrl+C to stop.", len(sched.jobs))
        try:
            while True:
                sched.run_pending()
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("Scheduler stopped by user.")
        return None

    if mode == "once":
        return run_cycle(store)

    if mode == "symbol":
        symbol = kwargs.get("symbol")
        if not symbol:
            logger.error("Symbol mode requires 'symbol' kwarg.")
            return None
        start = datetime.now(timezone.utc).isoformat()
        jobs = [
            run_job("pressure", lambda: pressure_job(store, [symbol], 0), store),
            run_job("semantic", lambda: semantic_job(store, [symbol], 0), store),
        ]
        return CycleResult(cycle_start_utc=start, cycle_end_utc=datetime.now(timezone.utc).isoformat(), jobs=jobs)

    if mode == "test":
        logger.info("Running TEST mode (3 symbols, no pauses, no alerts)...")
        return run_cycle(store, symbols=watched_symbols(store)[:3], pause_seconds=0, send_alerts_enabled=False)

    logger.error("Unknown scheduler mode: %s", mode)
    return None


# ──────────────────────────────────────────────────────────
# CLI INTERFACE
# ──────────────────────────────────────────────────────────


def _print_usage() -> None:
    print("\n" + "=" * 70)
    print("FLOW-PRESSURE Scheduler")
    print("=" * 70 + "\n")
    print("Usage:")
    print("  python scheduler.py scheduled          # Poll all jobs")
    print("  python scheduler.py once               # Run one cycle")
    print("  python scheduler.py symbol SYMBOL      # Refresh one symbol")
    print("  python scheduler.py test               # Test mode")
    print("\n" + "=" * 70 + "\n")


if __name__ == "__main__":
    import sys

    if len(sys.argv) < 2:
        _print_usage()
        sys.exit(0)

    mode = sys.argv[1].lower()
    kwargs: Dict[str, Any] = {}

    if mode == "symbol":
        if len(sys.argv) < 3:
            print("Error: symbol required.")
            print("Usage: python scheduler.py symbol SYMBOL")
            sys.exit(1)
        kwargs["symbol"] = sys.argv[2].upper()

    try:
        from config import validate_environment

        validate_environment()
    except Exception as exc:  # noqa: BLE001
        print(f"\nConfiguration error: {exc}\n")
        sys.exit(1)

    try:
        start_scheduler(mode, **kwargs)
    except KeyboardInterrupt:
        print("\nStopped by user.\n")
    except Exception as exc:  # noqa: BLE001
        logger.critical("Scheduler crashed: %s", exc, exc_info=True)
        send_error_alert(f"Scheduler crashed: {exc}", "CRITICAL")
        sys.exit(1)
