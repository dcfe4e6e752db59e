"""
Plan Change Preview

A confirmation quote that stays current while it is open. Time keeps
passing while the user reads the dialog, so the quote is recomputed on
a fixed interval until the preview is closed.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from student_billing.domain.proration import PlanChangeQuote
from student_billing.domain.subscription import utc_now
from student_billing.infrastructure.exceptions import ValidationError
from student_billing.services.scheduler import ScheduledTask, Scheduler


logger = logging.getLogger(__name__)

QuoteFactory = Callable[[datetime], PlanChangeQuote]


class PlanChangePreview:
    """Live plan change quote for an open confirmation dialog."""

    def __init__(
        self,
        quote_factory: QuoteFactory,
        scheduler: Scheduler,
        interval: float,
        clock: Callable[[], datetime] = utc_now,
        on_update: Optional[Callable[[PlanChangeQuote], None]] = None,
    ):
        self._quote_factory = quote_factory
        self._scheduler = scheduler
        self._interval = interval
        self._clock = clock
        self._on_update = on_update
        self._handle: Optional[ScheduledTask] = None
        self._closed = False

        # Raises ValidationError for an ineligible change before anything is scheduled
        self.quote = quote_factory(clock())
        self._schedule_next()

    @property
    def closed(self) -> bool:
        return self._closed

    def refresh(self) -> Optional[PlanChangeQuote]:
        """Recompute the quote for the current time. Closes the preview if it became invalid."""
        if self._closed:
            return None
        try:
            self.quote = self._quote_factory(self._clock())
        except ValidationError as e:
            logger.info(f"Closing plan change preview: {e.message}")
            self.close()
            return None

        if self._on_update is not None:
            self._on_update(self.quote)
        return self.quote

    def close(self) -> None:
        self._closed = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _schedule_next(self) -> None:
        if self._closed:
            return
        self._handle = self._scheduler.call_later(self._interval, self._tick, name="plan-change-preview")

    async def _tick(self) -> None:
        self.refresh()
        self._schedule_next()
