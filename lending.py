"""
Lending status for a single user's books.

The backend owns every lending rule (availability, due dates, one copy per
user).  What the portal does locally is read the user's transaction log
and work out which books are currently checked out to them, which buttons
to offer, and the late-fee figures shown on the history page.  Everything
here is pure: pass in transactions, get values back.
"""
import datetime
import enum
import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ISSUE = 'issue'
RETURN = 'return'
RENEW = 'renew'
ACTIONS = (ISSUE, RETURN, RENEW)

# Rupees per day past the due date.
DEFAULT_LATE_FEE = 5


class MalformedData(ValueError):
    """A transaction row that cannot be interpreted."""


class Action(enum.Enum):
    ISSUE = 'issue'
    RETURN = 'return'
    RENEW = 'renew'


@dataclass(frozen=True)
class Transaction:
    book_id: str
    user_id: Optional[str]
    action: str
    transaction_date: datetime.datetime
    due_date: Optional[datetime.datetime] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class LendingStatus:
    held: bool
    due_date: Optional[datetime.datetime] = None


def parse_timestamp(value) -> Optional[datetime.datetime]:
    """
    Parse an ISO-8601 timestamp from the backend into an aware datetime.

    Naive values are taken as UTC, a trailing ``Z`` is accepted and a bare
    date means midnight UTC.  ``None`` and empty strings give ``None``.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, datetime.date):
        parsed = datetime.datetime.combine(value, datetime.time())
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedData(f'unparseable timestamp {value!r}') from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def parse_transaction(row: dict) -> Transaction:
    """Build a Transaction from a backend row, raising MalformedData."""
    if not isinstance(row, dict):
        raise MalformedData(f'transaction row is not an object: {row!r}')
    book_id = row.get('book_id')
    action = row.get('action')
    if book_id is None or book_id == '':
        raise MalformedData('transaction without book_id')
    if action not in ACTIONS:
        raise MalformedData(f'unknown transaction action {action!r}')
    transaction_date = parse_timestamp(row.get('transaction_date'))
    if transaction_date is None:
        raise MalformedData('transaction without transaction_date')
    try:
        due_date = parse_timestamp(row.get('due_date'))
    except MalformedData as exc:
        # The row still decides who holds the book; only the date is lost.
        logger.warning('Ignoring due date of transaction %r: %s', row.get('id'), exc)
        due_date = None
    return Transaction(
        book_id=str(book_id),
        user_id=str(row['user_id']) if row.get('user_id') is not None else None,
        action=action,
        transaction_date=transaction_date,
        due_date=due_date,
        id=str(row['id']) if row.get('id') is not None else None,
    )


def parse_transactions(rows: Iterable[dict]) -> List[Transaction]:
    """
    Parse backend rows, keeping their order.

    Rows that cannot be parsed are logged and left out so one bad record
    never takes down a page.
    """
    transactions = []
    for row in rows or []:
        try:
            transactions.append(parse_transaction(row))
        except MalformedData as exc:
            logger.warning('Dropping malformed transaction %r: %s', row, exc)
    return transactions


def resolve_status(transactions: List[Transaction], book_id) -> Optional[LendingStatus]:
    """
    Work out whether ``book_id`` is currently held by the user.

    ``transactions`` is the user's whole log, most recent first, as the
    backend returns it.  Returns ``None`` when the user has no outstanding
    loan for the book.
    """
    book_id = str(book_id)
    history = [t for t in transactions if t.book_id == book_id]
    if not history:
        return None
    latest = history[0]
    has_later_return = any(
        t.action == RETURN and t.transaction_date > latest.transaction_date
        for t in history
    )
    if not has_later_return and latest.action in (ISSUE, RENEW):
        return LendingStatus(held=True, due_date=latest.due_date)
    return None


def resolve_statuses(transactions: List[Transaction]) -> Dict[str, LendingStatus]:
    """Resolve every book in the log, keeping only the held ones."""
    statuses = {}
    for book_id in dict.fromkeys(t.book_id for t in transactions):
        status = resolve_status(transactions, book_id)
        if status is not None:
            statuses[book_id] = status
    return statuses


def available_actions(status: Optional[LendingStatus], server_available: Optional[bool]) -> frozenset:
    """
    Decide which lending buttons to offer for one book.

    A holder may always return or renew.  Anyone else may issue only when
    the backend has reported a free copy; ``None`` means availability is
    still unknown (or its fetch failed) and issuing stays disabled.
    """
    if status is not None and status.held:
        return frozenset({Action.RETURN, Action.RENEW})
    if server_available is True:
        return frozenset({Action.ISSUE})
    return frozenset()


def is_outstanding(transactions: List[Transaction], index: int) -> bool:
    """
    True when the issue at ``index`` has no later return of the same book
    by the same user.  Later entries sit earlier in the descending list.
    """
    transaction = transactions[index]
    if transaction.action != ISSUE:
        return False
    return not any(
        t.book_id == transaction.book_id
        and t.user_id == transaction.user_id
        and t.action == RETURN
        for t in transactions[:index]
    )


def late_fee(transactions: List[Transaction], index: int, now=None,
             per_day: int = DEFAULT_LATE_FEE) -> int:
    transaction = transactions[index]
    if transaction.action != ISSUE or transaction.due_date is None:
        return 0
    if not is_outstanding(transactions, index):
        return 0
    now = now or datetime.datetime.now(datetime.timezone.utc)
    if transaction.due_date > now:
        return 0
    days_overdue = math.ceil((now - transaction.due_date).total_seconds() / 86400)
    return days_overdue * per_day


def loan_summary(transactions: List[Transaction], now=None,
                 per_day: int = DEFAULT_LATE_FEE) -> dict:
    """Headline numbers for a transaction history page."""
    now = now or datetime.datetime.now(datetime.timezone.utc)
    outstanding = [
        t for i, t in enumerate(transactions) if is_outstanding(transactions, i)
    ]
    return {
        'total_borrowed': len({t.book_id for t in transactions if t.action == ISSUE}),
        'currently_borrowed': len(outstanding),
        'overdue': len([t for t in outstanding if t.due_date is not None and t.due_date < now]),
        'total_fines': sum(
            late_fee(transactions, i, now, per_day) for i in range(len(transactions))
        ),
    }


def transaction_stats(transactions: List[Transaction]) -> dict:
    """Per-action counts for the staff transaction page."""
    return {
        'total': len(transactions),
        'issues': sum(1 for t in transactions if t.action == ISSUE),
        'returns': sum(1 for t in transactions if t.action == RETURN),
        'renewals': sum(1 for t in transactions if t.action == RENEW),
        'unique_users': len({t.user_id for t in transactions if t.user_id}),
        'unique_books': len({t.book_id for t in transactions}),
    }
