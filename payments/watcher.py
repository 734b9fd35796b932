"""Payment confirmation watcher.

Observes one transaction row until it reaches a terminal status. Two
producers feed the same transition function:

- push: row-level UPDATE notifications from the database
- pull: a fixed-interval re-read of the row

Either may deliver a status first, both may deliver it more than once.
``apply_status`` makes terminal states sticky and runs the completion
callback at most once per watcher.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from database import get_pool

from .ledger import TransactionLedger

logger = logging.getLogger(__name__)

TRANSACTION_CHANNEL = 'transaction_updates'

class WatchState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

TERMINAL_STATES = frozenset({WatchState.COMPLETED, WatchState.FAILED, WatchState.CANCELLED})

StatusCallback = Callable[[str], Awaitable[None]]
Unsubscribe = Callable[[], Awaitable[None]]

class TransactionFeed:
    """Source of transaction status changes.

    Implementations deliver pushed statuses to subscribers and answer direct
    status reads for the pull path.
    """

    async def subscribe(self, transaction_id: Any, callback: StatusCallback) -> Unsubscribe:
        raise NotImplementedError

    async def fetch_status(self, transaction_id: Any) -> str:
        raise NotImplementedError

class PostgresTransactionFeed(TransactionFeed):
    """Transaction feed backed by LISTEN/NOTIFY on the transactions table.

    A single listening connection is shared by all subscribers and released
    once the last one unsubscribes.
    """

    def __init__(self, pool=None, ledger: Optional[TransactionLedger] = None):
        self.pool = pool
        self.ledger = ledger or TransactionLedger(pool)
        self._conn = None
        self._subscribers: Dict[str, Set[StatusCallback]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    async def _ensure_listener(self):
        async with self._lock:
            if self._conn is not None:
                return
            await self.ensure_pool()
            self._conn = await self.pool.acquire()
            await self._conn.add_listener(TRANSACTION_CHANNEL, self._on_notification)
            logger.info(f"Listening on {TRANSACTION_CHANNEL}")

    async def _release_listener(self):
        async with self._lock:
            if self._conn is None or self._subscribers:
                return
            conn, self._conn = self._conn, None
            try:
                await conn.remove_listener(TRANSACTION_CHANNEL, self._on_notification)
            finally:
                await self.pool.release(conn)
            logger.info(f"Stopped listening on {TRANSACTION_CHANNEL}")

    def _on_notification(self, conn, pid, channel, payload):
        try:
            data = json.loads(payload)
        except ValueError:
            logger.warning(f"Ignoring malformed notification on {channel}: {payload!r}")
            return

        for callback in list(self._subscribers.get(str(data.get('id')), ())):
            task = asyncio.ensure_future(callback(data.get('status')))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def subscribe(self, transaction_id, callback):
        await self._ensure_listener()
        key = str(transaction_id)
        self._subscribers.setdefault(key, set()).add(callback)

        async def unsubscribe():
            callbacks = self._subscribers.get(key)
            if callbacks is not None:
                callbacks.discard(callback)
                if not callbacks:
                    del self._subscribers[key]
            await self._release_listener()

        return unsubscribe

    async def fetch_status(self, transaction_id):
        return (await self.ledger.get_status(transaction_id)).value

    async def close(self):
        """Drop all subscribers and release the listening connection."""
        self._subscribers.clear()
        await self._release_listener()

class ConfirmationWatcher:
    """Tracks one payment from ``pending`` to a terminal state.

    Args:
        transaction_id: Ledger row to watch
        feed: Push and pull source for the row's status
        reference: Reference shown to the user if support is needed
        on_completed: Coroutine run once when the payment completes
        on_change: Coroutine receiving a snapshot after every visible change
        poll_interval: Seconds between pull-path reads
        timeout: Seconds without a terminal state before support is offered
    """

    def __init__(
        self,
        transaction_id: Any,
        feed: TransactionFeed,
        reference: Optional[str] = None,
        on_completed: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        on_change: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        poll_interval: float = 3.0,
        timeout: Optional[float] = 30.0
    ):
        self.transaction_id = transaction_id
        self.feed = feed
        self.reference = reference
        self.on_completed = on_completed
        self.on_change = on_change
        self.poll_interval = poll_interval
        self.timeout = timeout

        self.state = WatchState.IDLE
        self.support_required = False
        self._activated = False
        self._unsubscribe: Optional[Unsubscribe] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._timeout_task: Optional[asyncio.Task] = None
        self._finished = asyncio.Event()

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def snapshot(self) -> Dict[str, Any]:
        return {
            'transaction_id': str(self.transaction_id),
            'status': self.state.value,
            'reference': self.reference,
            'support_required': self.support_required
        }

    async def start(self) -> None:
        """Enter ``pending`` and start both observation paths."""
        if self.state != WatchState.IDLE:
            return

        self.state = WatchState.PENDING
        await self._notify()

        self._unsubscribe = await self.feed.subscribe(self.transaction_id, self._on_push)
        self._poll_task = asyncio.create_task(self._poll_loop())
        if self.timeout:
            self._timeout_task = asyncio.create_task(self._timeout_loop())

        logger.info(f"Watching transaction {self.transaction_id}")

    async def apply_status(self, status: str, source: str = 'manual') -> bool:
        """Apply an observed status.

        Args:
            status: Status string read from the row
            source: Which path observed it, for logging

        Returns:
            True if the local state changed
        """
        try:
            new_state = WatchState(status)
        except ValueError:
            logger.warning(f"Ignoring unknown status {status!r} from {source}")
            return False

        # Checked and assigned without yielding, so concurrent deliveries see the new state
        if self.is_terminal or new_state in (WatchState.IDLE, self.state):
            return False

        self.state = new_state
        logger.info(f"Transaction {self.transaction_id} is {new_state.value} (via {source})")

        if self.is_terminal:
            self._finished.set()
            self._stop_timers()

        await self._notify()

        if new_state == WatchState.COMPLETED and not self._activated:
            self._activated = True
            if self.on_completed:
                try:
                    await self.on_completed(self.snapshot())
                except Exception as e:
                    logger.error(f"Activation after payment {self.transaction_id} failed: {e}")

        return True

    async def recheck(self) -> WatchState:
        """Read the row once and apply whatever it says."""
        status = await self.feed.fetch_status(self.transaction_id)
        await self.apply_status(status, 'recheck')
        return self.state

    async def wait(self, timeout: Optional[float] = None) -> WatchState:
        """Wait until a terminal state is reached."""
        await asyncio.wait_for(self._finished.wait(), timeout)
        return self.state

    async def close(self) -> None:
        """Stop observing. The gateway transaction itself is left alone."""
        for task in self._stop_timers():
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            try:
                await unsubscribe()
            except Exception as e:
                logger.warning(f"Error unsubscribing from transaction {self.transaction_id}: {e}")

        if not self.is_terminal:
            self.state = WatchState.CANCELLED
            self._finished.set()

        logger.info(f"Stopped watching transaction {self.transaction_id} ({self.state.value})")

    def _stop_timers(self) -> list:
        """Cancel the poll and timeout tasks, except the one running this call."""
        current = asyncio.current_task()
        stopped = []
        for task in (self._poll_task, self._timeout_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                stopped.append(task)
        return stopped

    async def _on_push(self, status: str) -> None:
        await self.apply_status(status, 'push')

    async def _poll_loop(self) -> None:
        while not self.is_terminal:
            await asyncio.sleep(self.poll_interval)
            try:
                status = await self.feed.fetch_status(self.transaction_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Polling transaction {self.transaction_id} failed: {e}")
                continue
            await self.apply_status(status, 'poll')

    async def _timeout_loop(self) -> None:
        await asyncio.sleep(self.timeout)
        if not self.is_terminal:
            self.support_required = True
            logger.warning(
                f"No confirmation for transaction {self.transaction_id} after "
                f"{self.timeout} seconds, offering support reference {self.reference}"
            )
            await self._notify()

    async def _notify(self) -> None:
        if not self.on_change:
            return
        try:
            await self.on_change(self.snapshot())
        except Exception as e:
            logger.warning(f"Status listener for transaction {self.transaction_id} failed: {e}")

__all__ = [
    'WatchState',
    'TransactionFeed',
    'PostgresTransactionFeed',
    'ConfirmationWatcher',
    'TRANSACTION_CHANNEL'
]
