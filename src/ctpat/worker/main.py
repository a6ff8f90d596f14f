"""CTPAT Relay worker entry point.

This module provides the DispatchWorker that:
- Releases delivery jobs left in flight by a crashed dispatcher
- Runs one dispatcher batch per poll interval
- Purges sent jobs older than the retention window
- Handles graceful shutdown via SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from ctpat.core.settings import configure_logging, load_settings
from ctpat.db import Database
from ctpat.services.delivery_queue import DeliveryQueueService
from ctpat.services.dispatcher import BatchResult, Dispatcher
from ctpat.services.mail import build_mail_channel
from ctpat.services.storage import build_blob_store

if TYPE_CHECKING:
    from ctpat.core.config import DeliverySettings, Settings
    from ctpat.services.mail import MailChannel
    from ctpat.services.storage import BlobStore

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for the worker process.

    Attributes:
        worker_id: Unique identifier for this worker instance.
        poll_interval: Seconds between dispatch cycles.
        batch_size: Maximum jobs delivered per cycle.
        stale_claim_seconds: How long before an in-flight job is considered abandoned.
        sent_retention_days: Sent jobs older than this are purged.
        shutdown_timeout: Seconds to wait for graceful shutdown.
    """

    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval: float = 15.0
    batch_size: int = 10
    stale_claim_seconds: int = 600
    sent_retention_days: int = 30
    shutdown_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: DeliverySettings) -> WorkerConfig:
        return cls(
            poll_interval=settings.poll_interval_seconds,
            batch_size=settings.batch_size,
            stale_claim_seconds=settings.stale_claim_seconds,
            sent_retention_days=settings.sent_retention_days,
        )


class DispatchWorker:
    """Background worker that drains the delivery queue on an interval.

    Several workers may run against the same database; the queue's claim
    step guarantees each job is delivered by at most one of them at a time.

    Example:
        worker = DispatchWorker(config, database, mail_channel, delivery=settings.delivery)
        await worker.start()
    """

    def __init__(
        self,
        config: WorkerConfig,
        database: Database,
        mail_channel: MailChannel,
        *,
        delivery: DeliverySettings,
        blob_store: BlobStore | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            config: Worker configuration settings.
            database: Database shared with the dispatcher.
            mail_channel: Channel used to send report emails.
            delivery: Queue settings (retries, backoff, timeouts).
            blob_store: Report storage for attachments, if configured.
        """
        self.config = config
        self.database = database
        self.delivery = delivery
        self.dispatcher = Dispatcher(
            database.session_factory,
            mail_channel,
            delivery,
            blob_store=blob_store,
            worker_id=config.worker_id,
        )
        self._shutdown_event = asyncio.Event()
        self._started_at: datetime | None = None
        self._cycles = 0
        self._jobs_sent = 0
        self._jobs_failed = 0

    async def start(self) -> None:
        """Run dispatch cycles until shutdown is requested via signal or stop()."""
        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: worker_id=%s, poll_interval=%.1fs, batch_size=%d",
            self.config.worker_id,
            self.config.poll_interval,
            self.config.batch_size,
        )

        try:
            await self._run_loop()
        finally:
            logger.info(
                "Worker stopped: worker_id=%s, cycles=%d, sent=%d, failed=%d, uptime=%s",
                self.config.worker_id,
                self._cycles,
                self._jobs_sent,
                self._jobs_failed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown of the worker."""
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def run_cycle(self) -> BatchResult:
        """Run one maintenance and dispatch cycle.

        Returns:
            The dispatcher's batch result.
        """
        await self._release_stale_claims()
        result = await self.dispatcher.run_batch(self.config.batch_size)
        await self._purge_sent()

        self._cycles += 1
        self._jobs_sent += result.sent
        self._jobs_failed += result.failed
        return result

    async def _run_loop(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.run_cycle()

                # Wait before next cycle (uses wait_for to allow shutdown)
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.poll_interval,
                    )

            except Exception as e:
                # Log error but continue running
                logger.exception("Error in worker loop: %s", e)
                await asyncio.sleep(1.0)

    async def _release_stale_claims(self) -> None:
        async with self.database.session() as session:
            queue = DeliveryQueueService.from_settings(session, self.delivery)
            count = await queue.release_stale_claims(
                stale_threshold_seconds=self.config.stale_claim_seconds
            )
            await session.commit()
        if count > 0:
            logger.warning("Reset %d stale claims", count)

    async def _purge_sent(self) -> None:
        async with self.database.session() as session:
            queue = DeliveryQueueService.from_settings(session, self.delivery)
            await queue.purge_sent(older_than_days=self.config.sent_retention_days)
            await session.commit()

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def _handle_shutdown(signum: int, shutdown_event: asyncio.Event) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    shutdown_event.set()


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Route SIGTERM and SIGINT to the shutdown event on the running loop."""
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _handle_shutdown, sig, shutdown_event)


async def _async_main(settings: Settings, shutdown_event: asyncio.Event) -> None:
    """Async entry point for the worker.

    Args:
        settings: Loaded application settings.
        shutdown_event: Event to signal shutdown request.
    """
    config = WorkerConfig.from_settings(settings.delivery)
    database = Database.from_settings(settings.database)
    worker = DispatchWorker(
        config,
        database,
        build_mail_channel(settings.smtp),
        delivery=settings.delivery,
        blob_store=build_blob_store(settings.s3),
    )

    worker_task = asyncio.create_task(worker.start())

    try:
        await shutdown_event.wait()
        await worker.stop()

        try:
            await asyncio.wait_for(worker_task, timeout=config.shutdown_timeout)
        except TimeoutError:
            logger.warning("Worker did not stop within timeout, forcing shutdown")
            worker_task.cancel()
    finally:
        await database.dispose()


def run() -> NoReturn:
    """Run the worker process.

    This is the ``ctpat-worker`` console script. It:
    - Loads settings and sets up logging
    - Registers signal handlers for graceful shutdown
    - Runs the async worker loop
    """
    settings = load_settings()
    configure_logging(settings)

    logger.info("CTPAT Relay worker starting...")

    async def _run_with_event() -> None:
        shutdown_event = asyncio.Event()
        install_signal_handlers(shutdown_event)
        await _async_main(settings, shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("CTPAT Relay worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
