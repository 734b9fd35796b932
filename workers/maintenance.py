"""Worker that reconciles abandoned payments and expires old listings."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
import traceback

import requests

from config import settings_conf
from database import init_db, get_pool, close
from listings import ListingManager
from payments import (
    CallbackProcessor,
    PaymentMethod,
    TransactionLedger,
    TransactionStatus,
    GatewayError,
    ValidationError,
    build_gateways
)

# Configure logging
logger = logging.getLogger(__name__)

async def reconcile_stale_transactions(ledger, processor, gateways, ttl_minutes=None):
    """Settle payments that have been pending longer than the TTL.

    The provider is asked for the real outcome first so a payment whose
    webhook was lost is still completed. Payments the provider still reports
    as pending are cancelled.

    Returns:
        Number of transactions settled
    """
    ttl_minutes = ttl_minutes or settings_conf['pending_transaction_ttl']
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=ttl_minutes)
    stale = await ledger.list_stale_pending(cutoff)

    logger.info(f"Found {len(stale)} stale pending transactions to reconcile")

    settled = 0
    for transaction in stale:
        try:
            status = TransactionStatus.CANCELLED
            gateway = gateways.get(PaymentMethod(transaction['payment_method']))

            if gateway is not None:
                try:
                    reported = await gateway.verify(
                        transaction['reference'],
                        transaction.get('psp_transaction_id')
                    )
                except GatewayError as e:
                    logger.warning(f"Could not verify transaction {transaction['id']}, retrying later: {e}")
                    continue
                except ValidationError as e:
                    logger.warning(f"Transaction {transaction['id']} cannot be verified, cancelling: {e}")
                    reported = TransactionStatus.PENDING

                if reported != TransactionStatus.PENDING:
                    status = reported

            row = await processor.settle(status, transaction_id=transaction['id'])
            if row is not None:
                settled += 1
                logger.info(f"Reconciled stale transaction {transaction['id']} as {status.value}")

        except Exception as e:
            logger.error(f"Error reconciling transaction {transaction['id']}: {str(e)}")
            logger.error(traceback.format_exc())
            continue

    return settled

async def expire_listings(manager):
    """Mark active listings past their expiry date as expired."""
    try:
        expired = await manager.expire_listings()
        if expired:
            logger.info(f"Expired {expired} listings")
        return expired
    except Exception as e:
        logger.error(f"Error in expire_listings: {str(e)}")
        logger.error(traceback.format_exc())
        return 0

async def run_worker(interval=None):
    """Main worker loop."""
    interval = interval or settings_conf['listing_expiry_interval']
    logger.info("Maintenance worker starting up")

    pool = await get_pool()
    gateways = build_gateways(settings_conf, requests.Session)
    ledger = TransactionLedger(pool)
    processor = CallbackProcessor(ledger=ledger, gateways=gateways, pool=pool)
    listings = ListingManager(pool)

    while True:
        try:
            await reconcile_stale_transactions(ledger, processor, gateways)
            await expire_listings(listings)

        except Exception as e:
            logger.error(f"Error in worker loop: {str(e)}")
            logger.error(traceback.format_exc())

        finally:
            await asyncio.sleep(interval)

async def main():
    await init_db()
    try:
        await run_worker()
    finally:
        await close()

if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
