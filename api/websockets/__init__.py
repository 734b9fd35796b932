"""WebSocket endpoint for live payment confirmation."""

import logging
from uuid import UUID

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from auth import manager as auth_manager, AuthError
from payments import ConfirmationWatcher, NotFoundError

# Configure logging
logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/ws",
    tags=["WebSocket"]
)

async def _authenticate(websocket: WebSocket) -> str:
    """Read the access token from the query string or the first message."""
    token = websocket.query_params.get('token')
    if not token:
        message = await websocket.receive_json()
        token = message.get('token') if isinstance(message, dict) else None
    return auth_manager.verify_token(token or '')['user_id']

@router.websocket("/transactions/{transaction_id}")
async def watch_transaction(websocket: WebSocket, transaction_id: UUID):
    """Stream status changes of one of the caller's transactions.

    The server sends a snapshot ``{transaction_id, status, reference,
    support_required}`` on every change. Clients may send ``recheck`` to
    force a read of the row, or ``close`` to stop watching. Closing the
    socket does not cancel the payment itself.
    """
    services = websocket.app.state.services
    await websocket.accept()

    try:
        user_id = await _authenticate(websocket)
        transaction = await services.ledger.get_transaction(transaction_id)
    except (AuthError, NotFoundError, ValueError):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if str(transaction['user_id']) != str(user_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    async def send_snapshot(snapshot):
        await websocket.send_json({'event': 'status', **snapshot})

    async def activate(snapshot):
        # Plan purchases unlock the plan as soon as the payment completes
        if transaction.get('plan_id'):
            subscription = await services.subscriptions.activate(
                user_id, transaction['plan_id'], transaction['id']
            )
            await websocket.send_json({
                'event': 'activated',
                'subscription_id': str(subscription['id'])
            })

    watcher = ConfirmationWatcher(
        transaction_id,
        services.feed,
        reference=transaction['reference'],
        on_completed=activate,
        on_change=send_snapshot,
        poll_interval=services.settings['poll_interval'],
        timeout=services.settings['confirmation_timeout']
    )

    try:
        await watcher.start()
        # The row may already be terminal before we subscribed
        await watcher.apply_status(transaction['status'], 'initial')

        while True:
            message = await websocket.receive_text()
            action = message.strip().lower()
            if action == 'recheck':
                await watcher.recheck()
            elif action == 'close':
                break
            else:
                await websocket.send_json({'event': 'error', 'message': f"Unknown action: {message}"})

    except WebSocketDisconnect:
        logger.info(f"Client stopped watching transaction {transaction_id}")
    except Exception as e:
        logger.error(f"Error watching transaction {transaction_id}: {e}")
    finally:
        await watcher.close()

    try:
        await websocket.close()
    except RuntimeError:
        # Already closed by the client
        pass
