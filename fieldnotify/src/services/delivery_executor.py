"""
Asynchronous delivery.

Creation returns to its caller as soon as rows are committed; delivery runs
on a bounded thread pool. Jobs carry notification ids, never ORM objects,
and every job opens its own session, so a slow push service never holds up
the creating request and sessions are never shared between threads.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from fieldnotify.src.config.settings import NotifySettings
from fieldnotify.src.db.database import session_scope
from fieldnotify.src.services.delivery_dispatcher import DeliveryDispatcher, DeliveryOutcome
from fieldnotify.src.services.push_provider import PushProvider
from fieldnotify.src.utils.clock import Clock, SystemClock
from fieldnotify.src.utils.logging_config import get_logger


logger = get_logger("delivery")


class DeliveryExecutor:
    """
    Thread pool that runs DeliveryDispatcher jobs.

    Usage:
        >>> executor = DeliveryExecutor(factory, provider, settings)
        >>> future = executor.submit([101, 102])
        >>> future.result()
        {101: <DeliveryOutcome.DELIVERED: 'DELIVERED'>, ...}
        >>> executor.shutdown()
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        provider: PushProvider,
        settings: NotifySettings,
        clock: Optional[Clock] = None,
        max_workers: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.settings = settings
        self.clock = clock or SystemClock()
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.delivery_workers,
            thread_name_prefix="delivery",
        )

    def submit(self, notification_ids: Sequence[int]) -> Future:
        """Queue delivery of ``notification_ids`` and return immediately."""
        ids = list(notification_ids)
        logger.debug("Delivery job queued", extra={"count": len(ids)})
        return self._pool.submit(self._run, ids)

    def _run(self, notification_ids: List[int]) -> Dict[int, DeliveryOutcome]:
        try:
            with session_scope(self.session_factory) as db:
                dispatcher = DeliveryDispatcher(db, self.provider, self.settings, self.clock)
                return dispatcher.deliver_many(notification_ids)
        except Exception:
            logger.exception(
                "Delivery job failed",
                extra={"notification_ids": notification_ids},
            )
            raise

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
