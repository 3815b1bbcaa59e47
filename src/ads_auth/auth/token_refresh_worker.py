"""
Background worker for refreshing ad platform OAuth tokens.
Uses APScheduler to run periodic token refresh jobs on the event loop.
"""
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import settings
from ..utils.helpers import utcnow
from ..utils.logger import logger
from .authenticator import AdPlatformAuthenticator


class TokenRefreshWorker:
    """Worker for refreshing OAuth tokens before expiry."""

    def __init__(
        self,
        authenticator: AdPlatformAuthenticator,
        interval_minutes: Optional[int] = None,
        buffer_minutes: Optional[int] = None,
    ):
        self.authenticator = authenticator
        self.interval_minutes = interval_minutes or settings.token_refresh_sweep_minutes
        # Sweep ahead of the next run so nothing expires between two sweeps
        self.buffer_minutes = (
            buffer_minutes if buffer_minutes is not None
            else settings.token_refresh_buffer_minutes + self.interval_minutes
        )
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False

    async def refresh_tokens_job(self) -> None:
        """Job to refresh tokens that are expiring soon."""
        logger.info("Starting token refresh job")

        cutoff = utcnow() + timedelta(minutes=self.buffer_minutes)
        try:
            user_ids = await self.authenticator.store.list_users_with_tokens_expiring_before(cutoff)
        except Exception as e:
            logger.error(f"Token refresh job error: {e}")
            return

        logger.info(f"Found {len(user_ids)} users with tokens to refresh")

        success_count = 0
        failure_count = 0
        for user_id in user_ids:
            try:
                result = await self.authenticator.refresh_all_user_tokens(
                    user_id, buffer_minutes=self.buffer_minutes
                )
            except Exception as e:
                failure_count += 1
                logger.error(f"Error refreshing tokens for user {user_id}: {e}")
                continue
            success_count += len(result.refreshed)
            failure_count += len(result.errors)

        logger.info(
            f"Token refresh completed: {success_count} succeeded, {failure_count} failed"
        )

        # Alert if failure rate is high
        total = success_count + failure_count
        if total > 0 and (failure_count / total) > 0.1:  # >10% failure rate
            logger.warning(
                f"High token refresh failure rate: {failure_count}/{total} "
                f"({(failure_count/total)*100:.1f}%)"
            )

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        if self.is_running:
            logger.warning("Token refresh worker already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.refresh_tokens_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="token_refresh",
            name="Refresh ad platform OAuth tokens",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        self.is_running = True
        logger.info(f"Token refresh worker started (runs every {self.interval_minutes} minutes)")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        self.is_running = False
        logger.info("Token refresh worker stopped")
