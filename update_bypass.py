# iKuai Bypass Updater
# Author: iKuai Bypass Updater contributors
# License: MIT

import argparse
import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

import requests
from croniter import croniter

from bypass_config import DEFAULT_CONFIG_PATH, Config, ConfigError, load_config
from bypass_reconcile import CATEGORY_ORDER, OperationResult, reconcile
from bypass_sources import FetchError, fetch_all
from ikuai_api import IKuaiClient, IKuaiError
from netgateway import GatewayError, default_gateway

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


class RunState(Enum):
    IDLE = 'idle'
    FETCHING = 'fetching'
    GATE = 'gate'
    RECONCILING = 'reconciling'


@dataclass
class RunReport:
    state: RunState = RunState.IDLE
    aborted_stage: Optional[str] = None
    error: Optional[str] = None
    results: List[OperationResult] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.aborted_stage is not None

    @property
    def failures(self) -> List[OperationResult]:
        return [r for r in self.results if not r.ok]


def _transition(report: RunReport, state: RunState) -> None:
    logger.debug(f"Run state: {report.state.value} -> {state.value}")
    report.state = state


def _abort(report: RunReport, stage: str, error: Exception) -> RunReport:
    report.aborted_stage = stage
    report.error = str(error)
    _transition(report, RunState.IDLE)
    return report


def resolve_base_url(config: Config, discover: Callable[[], str] = default_gateway) -> str:
    if config.ikuai_url:
        return config.ikuai_url
    base_url = f"http://{discover()}"
    logger.info(f"🧭 No ikuai-url configured, using default gateway {base_url}")
    return base_url


def open_session(config: Config, client_factory: Callable[..., IKuaiClient] = IKuaiClient,
                 discover: Callable[[], str] = default_gateway) -> IKuaiClient:
    """Discover the router if needed and log in. Raises on any failure."""
    client = client_factory(resolve_base_url(config, discover), timeout=config.request_timeout)
    client.login(config.username, config.password)
    return client


def delete_categories(config: Config) -> List[str]:
    """Categories whose old rules get deleted this run."""
    if config.clear_unconfigured:
        return [c.key for c in CATEGORY_ORDER]
    counts = config.source_counts()
    return [c.key for c in CATEGORY_ORDER if counts[c.key]]


def log_summary(report: RunReport, elapsed: float) -> None:
    deletes = [r for r in report.results if r.action == 'delete' and not r.skipped]
    adds = [r for r in report.results if r.action == 'add' and not r.skipped]

    logger.info(f"{'='*60}")
    logger.info("SUMMARY")
    logger.info(f"{'='*60}")
    logger.info(f"🧹 Categories cleared: {sum(r.ok for r in deletes)}/{len(deletes)}")
    logger.info(f"🧩 Rules added: {sum(r.ok for r in adds)}/{len(adds)}")
    logger.info(f"⏱️ Run time: {elapsed:.1f}s")

    if report.failures:
        logger.warning(f"⚠️ {len(report.failures)} operation(s) failed:")
        for r in report.failures:
            logger.warning(f"  {r.category} {r.action} '{r.target}': {r.error}")
    else:
        logger.info("✅ All bypass rules updated successfully!")


def run_update(config: Config, client_factory: Callable[..., IKuaiClient] = IKuaiClient,
               discover: Callable[[], str] = default_gateway, http_get=None) -> RunReport:
    """One full update: session, fetch everything, then replace the rules.

    Session or fetch failures abort before anything on the router is touched.
    Once every source is in hand, reconciliation always runs to the end.
    """
    report = RunReport()
    start = time.time()

    logger.info(f"{'='*60}")
    logger.info("🎬 Starting iKuai bypass update")
    logger.info(f"{'='*60}")

    _transition(report, RunState.FETCHING)
    try:
        client = open_session(config, client_factory, discover)
    except (GatewayError, IKuaiError, requests.RequestException) as e:
        logger.error(f"🚫 Could not open router session, aborting update: {e}")
        return _abort(report, 'session', e)

    try:
        rules = fetch_all(config, client, http_get)
    except FetchError as e:
        logger.error(f"🚫 Failed to fetch {e}, aborting update")
        return _abort(report, 'fetch', e)

    # Every source is in hand; nothing has been changed on the router yet
    _transition(report, RunState.GATE)

    _transition(report, RunState.RECONCILING)
    report.results = reconcile(client, rules, delete_categories(config))

    _transition(report, RunState.IDLE)
    log_summary(report, time.time() - start)
    return report


_run_lock = threading.Lock()


def scheduled_update(config_path: str, runner: Callable[[Config], RunReport] = run_update) -> Optional[RunReport]:
    """Reload config and run once. Skips if a previous run is still going."""
    if not _run_lock.acquire(blocking=False):
        logger.warning("⏭️ Previous update still running, skipping this tick")
        return None
    try:
        try:
            config = load_config(config_path)
        except ConfigError as e:
            logger.error(f"🚫 Failed to reload config, skipping update: {e}")
            return None
        return runner(config)
    finally:
        _run_lock.release()


def next_fire_time(expression: str, now: datetime) -> datetime:
    return croniter(expression, now).get_next(datetime)


def run_scheduler(expression: str, job: Callable[[], object], stop: threading.Event,
                  now: Callable[[], datetime] = datetime.now) -> None:
    """Run job on a cron schedule until stop is set.

    The next fire time is computed after each run, so ticks missed while a
    run was in progress are skipped. A job that raises is logged and the
    schedule carries on.
    """
    logger.info(f"⏰ Scheduler started with cron '{expression}'")
    while not stop.is_set():
        fire_at = next_fire_time(expression, now())
        logger.info(f"⏰ Next update at {fire_at:%Y-%m-%d %H:%M:%S}")
        delay = max((fire_at - now()).total_seconds(), 0)
        if stop.wait(delay):
            break
        try:
            job()
        except Exception as e:
            logger.error(f"🚫 Scheduled update crashed, waiting for the next tick: {e}", exc_info=True)
    logger.info("🛑 Scheduler stopped")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Sync remote IP/domain lists into iKuai bypass rules")
    parser.add_argument('-c', '--config', default=DEFAULT_CONFIG_PATH,
                        help=f"Path to the YAML config file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument('--once', action='store_true',
                        help="Run a single update and exit, ignoring cron")
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help="Logging level (default: INFO)")
    return parser.parse_args(argv)


def install_signal_handlers(stop: threading.Event) -> None:
    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"🚫 {e}")
        return 1

    if args.once:
        report = run_update(config)
        return 1 if report.aborted or report.failures else 0

    stop = threading.Event()
    install_signal_handlers(stop)

    run_update(config)

    if not config.cron:
        logger.info("No cron configured, idling until terminated")
        while not stop.wait(3600):
            pass
        return 0

    run_scheduler(config.cron, lambda: scheduled_update(args.config), stop)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
