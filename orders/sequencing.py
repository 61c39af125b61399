"""
Order number generation.

Pattern: YYMMDD-NNN (e.g. 240823-001), one sequence per calendar day,
at most 999 orders per day.

The next number is derived from the highest existing order number for the
day ("read max, increment"). Two concurrent requests can compute the same
number; the unique order_no column turns that into an IntegrityError, and
with_retry re-queries a bounded number of times. This narrows collisions
but does not guarantee uniqueness under sustained contention.
"""
import logging
import re
from datetime import date
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

from django.conf import settings
from django.db import transaction, IntegrityError
from django.utils import timezone

from core.locking import date_prefix_lock
from core.store import Store

logger = logging.getLogger(__name__)

MAX_DAILY_SEQUENCE = 999

_ORDER_NUMBER = re.compile(r'([0-9]{2})([0-9]{2})([0-9]{2})-([0-9]{3})')


class SequenceError(Exception):
    """Base class for order numbering failures."""
    pass


class SequenceExhaustedError(SequenceError):
    """Raised when a day already has MAX_DAILY_SEQUENCE orders."""
    def __init__(self, date_string: str):
        self.date_string = date_string
        super().__init__(
            f"Maximum daily order limit reached for {date_string} "
            f"({MAX_DAILY_SEQUENCE} orders)"
        )


class OrderNumberConflictError(SequenceError):
    """Raised when every attempt to claim a number hit an existing order."""
    def __init__(self, date_string: str, attempts: int):
        self.date_string = date_string
        self.attempts = attempts
        super().__init__(
            f"Failed to generate order number for {date_string} "
            f"after {attempts} attempts"
        )


def today() -> date:
    """Current calendar date in the order numbering timezone."""
    return timezone.localdate(timezone=ZoneInfo(settings.ORDER_NUMBER_TIMEZONE))


def format_order_date(order_date: date) -> str:
    """Format a date (or datetime) as YYMMDD."""
    return order_date.strftime('%y%m%d')


def parse_order_number(order_no) -> Optional[Dict]:
    """
    Split an order number into its parts.

    Returns None when the string does not match YYMMDD-NNN. full_date is
    None when the digits do not form a real calendar date.
    """
    if not order_no or not isinstance(order_no, str):
        return None

    match = _ORDER_NUMBER.fullmatch(order_no)
    if not match:
        return None

    year, month, day, sequence = (int(group) for group in match.groups())
    try:
        full_date = date(2000 + year, month, day)
    except ValueError:
        full_date = None

    return {
        'year': year,
        'month': month,
        'day': day,
        'sequence': sequence,
        'date_string': ''.join(match.groups()[:3]),
        'full_date': full_date,
    }


def is_valid_order_number(order_no) -> bool:
    parsed = parse_order_number(order_no)
    if parsed is None:
        return False
    return (
        1 <= parsed['month'] <= 12
        and 1 <= parsed['day'] <= 31
        and 1 <= parsed['sequence'] <= MAX_DAILY_SEQUENCE
    )


class OrderSequencer:
    """Mints order numbers from the orders already in the store."""

    def __init__(self, store: Store):
        self.store = store

    def get_next_sequence_number(self, date_string: str) -> int:
        """
        Next free sequence for a YYMMDD prefix.

        Raises:
            SequenceExhaustedError: The day already reached 999 orders
        """
        last_order_no = self.store.max_order_number_for_date(date_string)
        if not last_order_no:
            return 1

        last_sequence = int(last_order_no.split('-')[1])
        if last_sequence >= MAX_DAILY_SEQUENCE:
            raise SequenceExhaustedError(date_string)
        return last_sequence + 1

    def generate_order_number(self, order_date: Optional[date] = None,
                              with_retry: bool = False,
                              insert: Optional[Callable[[str], object]] = None,
                              lock: bool = True) -> str:
        """
        Generate the next order number for a day.

        Args:
            order_date: Day of the order (defaults to today())
            with_retry: Retry on a uniqueness conflict during insert, up to
                ORDER_SEQUENCE_MAX_ATTEMPTS attempts
            insert: Caller's insert, called with the candidate number inside
                a savepoint. An IntegrityError on an existing number means
                the number was taken; any other IntegrityError propagates.
            lock: Take the date-prefix lock around the inserts. Callers that
                insert inside a longer transaction pass False and hold
                date_prefix_lock themselves until that transaction ends.

        Returns:
            Order number in YYMMDD-NNN form

        Raises:
            SequenceExhaustedError: The day already reached 999 orders
            OrderNumberConflictError: Every attempt collided
        """
        date_string = format_order_date(order_date or today())

        if insert is None:
            return self._format(date_string, self.get_next_sequence_number(date_string))

        if not lock:
            return self._claim(date_string, insert, with_retry)
        with date_prefix_lock(date_string):
            return self._claim(date_string, insert, with_retry)

    def _claim(self, date_string: str, insert: Callable[[str], object],
               with_retry: bool) -> str:
        max_attempts = settings.ORDER_SEQUENCE_MAX_ATTEMPTS if with_retry else 1

        for attempt in range(1, max_attempts + 1):
            order_no = self._format(
                date_string, self.get_next_sequence_number(date_string)
            )
            try:
                with transaction.atomic():
                    insert(order_no)
            except IntegrityError:
                if not self.store.order_number_exists(order_no):
                    raise
                logger.warning(
                    f"Order number {order_no} already taken "
                    f"(attempt {attempt}/{max_attempts})"
                )
                continue

            logger.info(f"Assigned order number {order_no}")
            return order_no

        raise OrderNumberConflictError(date_string, max_attempts)

    @staticmethod
    def _format(date_string: str, sequence: int) -> str:
        return f"{date_string}-{sequence:03d}"
