"""Tests for the payment confirmation watcher."""

import asyncio
import uuid

import pytest
import pytest_asyncio

from payments import ConfirmationWatcher, WatchState
from payments.watcher import TransactionFeed, PostgresTransactionFeed

class FakeFeed(TransactionFeed):
    """Feed whose pushes and row status are driven by the test."""

    def __init__(self, status='pending'):
        self.status = status
        self.callbacks = []
        self.unsubscribed = False
        self.reads = 0

    async def subscribe(self, transaction_id, callback):
        self.callbacks.append(callback)

        async def unsubscribe():
            self.unsubscribed = True
            self.callbacks.remove(callback)

        return unsubscribe

    async def fetch_status(self, transaction_id):
        self.reads += 1
        return self.status

    async def push(self, status):
        for callback in list(self.callbacks):
            await callback(status)

class Recorder:
    def __init__(self):
        self.completions = []
        self.changes = []

    async def on_completed(self, snapshot):
        self.completions.append(snapshot)

    async def on_change(self, snapshot):
        self.changes.append(snapshot)

def make_watcher(feed, recorder, poll_interval=60.0, timeout=None):
    return ConfirmationWatcher(
        uuid.uuid4(),
        feed,
        reference='kikwetu_u_1_abcdef',
        on_completed=recorder.on_completed,
        on_change=recorder.on_change,
        poll_interval=poll_interval,
        timeout=timeout
    )

@pytest.fixture
def feed():
    return FakeFeed()

@pytest.fixture
def recorder():
    return Recorder()

@pytest_asyncio.fixture
async def watcher(feed, recorder):
    """A started watcher with a slow poll, closed after the test."""
    watcher = make_watcher(feed, recorder)
    await watcher.start()
    yield watcher
    await watcher.close()

@pytest.mark.asyncio
async def test_start_enters_pending_and_subscribes(watcher, feed, recorder):
    assert watcher.state == WatchState.PENDING
    assert len(feed.callbacks) == 1
    assert recorder.changes[0]['status'] == 'pending'

@pytest.mark.asyncio
async def test_push_completion_then_poll_is_noop(watcher, feed, recorder):
    """A pushed completion applies once; a later read of the same row changes nothing."""
    await feed.push('completed')
    assert watcher.state == WatchState.COMPLETED
    assert len(recorder.completions) == 1

    feed.status = 'completed'
    await watcher.recheck()
    await feed.push('completed')

    assert watcher.state == WatchState.COMPLETED
    assert len(recorder.completions) == 1

@pytest.mark.asyncio
async def test_poll_path_completes_without_push():
    feed, recorder = FakeFeed(), Recorder()
    watcher = make_watcher(feed, recorder, poll_interval=0.01)
    await watcher.start()

    feed.status = 'completed'
    state = await watcher.wait(timeout=2)

    assert state == WatchState.COMPLETED
    assert feed.reads >= 1
    assert len(recorder.completions) == 1
    await watcher.close()

@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_complete_once(watcher, recorder):
    results = await asyncio.gather(
        watcher.apply_status('completed', 'push'),
        watcher.apply_status('completed', 'poll'),
        watcher.apply_status('completed', 'push')
    )

    assert results.count(True) == 1
    assert len(recorder.completions) == 1

@pytest.mark.asyncio
async def test_terminal_state_is_sticky(watcher, feed, recorder):
    await feed.push('failed')
    await feed.push('completed')

    assert watcher.state == WatchState.FAILED
    assert recorder.completions == []

@pytest.mark.asyncio
async def test_unknown_status_is_ignored(watcher):
    changed = await watcher.apply_status('refunded', 'push')

    assert not changed
    assert watcher.state == WatchState.PENDING

@pytest.mark.asyncio
async def test_timeout_offers_support_without_failing():
    feed, recorder = FakeFeed(), Recorder()
    watcher = make_watcher(feed, recorder, timeout=0.05)
    await watcher.start()

    await asyncio.sleep(0.2)

    assert watcher.state == WatchState.PENDING
    assert watcher.support_required
    assert recorder.changes[-1]['support_required'] is True
    assert recorder.changes[-1]['reference'] == 'kikwetu_u_1_abcdef'

    # The user can still re-check after the timeout
    feed.status = 'completed'
    assert await watcher.recheck() == WatchState.COMPLETED
    await watcher.close()

@pytest.mark.asyncio
async def test_close_stops_observing():
    feed, recorder = FakeFeed(), Recorder()
    watcher = make_watcher(feed, recorder, poll_interval=0.01)
    await watcher.start()

    await watcher.close()
    reads = feed.reads
    await asyncio.sleep(0.05)

    assert feed.unsubscribed
    assert feed.callbacks == []
    assert watcher.state == WatchState.CANCELLED
    assert feed.reads == reads

@pytest.mark.asyncio
async def test_activation_failure_keeps_completed_state():
    feed = FakeFeed()

    async def broken(snapshot):
        raise RuntimeError('subscription service down')

    watcher = ConfirmationWatcher(uuid.uuid4(), feed, on_completed=broken, poll_interval=60.0, timeout=None)
    await watcher.start()

    assert await watcher.apply_status('completed', 'push')
    assert watcher.state == WatchState.COMPLETED
    await watcher.close()

@pytest.mark.asyncio
async def test_postgres_feed_dispatches_notifications(pool, conn):
    feed = PostgresTransactionFeed(pool)
    transaction_id = uuid.uuid4()
    received = []

    async def callback(status):
        received.append(status)

    unsubscribe = await feed.subscribe(transaction_id, callback)
    conn.add_listener.assert_awaited_once()

    feed._on_notification(conn, 1, 'transaction_updates',
                          f'{{"id": "{transaction_id}", "status": "completed"}}')
    feed._on_notification(conn, 1, 'transaction_updates',
                          f'{{"id": "{uuid.uuid4()}", "status": "failed"}}')
    feed._on_notification(conn, 1, 'transaction_updates', 'not json')
    await asyncio.sleep(0)

    assert received == ['completed']

    await unsubscribe()
    conn.remove_listener.assert_awaited_once()
    pool.release.assert_awaited_once_with(conn)

@pytest.mark.asyncio
async def test_postgres_feed_keeps_dispatch_tasks_until_done(pool, conn):
    feed = PostgresTransactionFeed(pool)
    transaction_id = uuid.uuid4()
    release = asyncio.Event()

    async def callback(status):
        await release.wait()

    await feed.subscribe(transaction_id, callback)
    feed._on_notification(conn, 1, 'transaction_updates',
                          f'{{"id": "{transaction_id}", "status": "completed"}}')

    assert len(feed._tasks) == 1
    task = next(iter(feed._tasks))

    release.set()
    await task
    await asyncio.sleep(0)

    assert feed._tasks == set()
    await feed.close()
