"""
Status reconciliation background worker.

Periodically re-queries the gateway for payments still PENDING after a
grace period, covering webhooks that never arrived. Gateway timeouts are
retried here with exponential backoff; the core itself never retries.
"""
import asyncio
import signal
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from payment_guard.bootstrap import start_services
from payment_guard.config import Settings, get_settings
from payment_guard.core.exceptions import GatewayError, GatewayTimeout
from payment_guard.core.models import StatusUpdate, utcnow
from payment_guard.core.orchestrator import PaymentOrchestrator
from payment_guard.core.store import PaymentStore
from payment_guard.monitoring.logging import setup_logging
from payment_guard.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

FAILED_OUTCOME = "failed"


class StatusReconciler:
    """Refreshes stale PENDING payments through the orchestrator."""

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        store: PaymentStore,
        grace_seconds: int = 900,
        batch_size: int = 100,
        max_attempts: int = 3,
        wait: Optional[wait_base] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orchestrator = orchestrator
        self.store = store
        self.grace_seconds = grace_seconds
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.wait = wait or wait_exponential(multiplier=1, min=1, max=16)
        self._clock = clock

    async def refresh_one(self, payment_id: str) -> StatusUpdate:
        """
        Refresh a single payment, retrying gateway timeouts.

        Raises:
            GatewayError: Still failing after the last attempt
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(GatewayTimeout),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "reconciliation_retry",
                        payment_id=payment_id,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self.orchestrator.refresh_status(payment_id)
        raise RuntimeError("Retry loop exited without a result")  # For type checker

    async def run_once(self) -> Dict[str, int]:
        """
        Run one reconciliation pass.

        Returns:
            Dict[str, int]: Count of payments per outcome
        """
        cutoff = self._clock() - timedelta(seconds=self.grace_seconds)
        pending = await self.store.list_pending(older_than=cutoff, limit=self.batch_size)
        logger.info("reconciliation_started", pending_count=len(pending))

        outcomes: Counter[str] = Counter()
        for record in pending:
            try:
                update = await self.refresh_one(record.payment_id)
                outcome = update.value
            except GatewayError as e:
                logger.warning(
                    "reconciliation_refresh_failed",
                    payment_id=record.payment_id,
                    error_code=e.error_code,
                )
                outcome = FAILED_OUTCOME
            outcomes[outcome] += 1
            metrics.record_reconciliation(outcome)

        metrics.mark_reconciliation_run()
        logger.info("reconciliation_completed", **dict(outcomes))
        return dict(outcomes)


async def start_status_reconciler(
    settings: Optional[Settings] = None,
    interval_seconds: Optional[int] = None,
    once: bool = False,
) -> None:
    """
    Start the reconciliation worker.

    Args:
        settings: Settings; loaded from the environment when omitted
        interval_seconds: Pause between passes, defaults to the setting
        once: Run a single pass and exit
    """
    settings = settings or get_settings()
    setup_logging(settings)
    interval = interval_seconds or settings.reconciliation_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval)
    services = await start_services(settings)
    reconciler = StatusReconciler(
        services.orchestrator,
        services.repository,
        grace_seconds=settings.reconciliation_grace_seconds,
    )

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await reconciler.run_once()
            except Exception as e:
                logger.error("reconciliation_execution_error", error=str(e))
                # Continue running even if one pass fails

            if once:
                break

            # Wait for the next pass (with periodic checks for shutdown signal)
            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await services.close()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Payment status reconciliation worker")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between passes")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    asyncio.run(start_status_reconciler(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
