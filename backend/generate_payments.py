"""
generate_payments.py: creates the missing Payment records for billable deliveries
(started, picked-up, delivered, completed) and refreshes the affected clients' standing.

Usage:
    cd backend
    python generate_payments.py [--client CLIENT_ID]
"""
import argparse
import asyncio
import logging
import os
import sys

sys.path.append(os.path.dirname(os.path.abspath(__file__)))
from database import connect_db, close_db, get_store
from services.billing_service import PaymentSynchronizer
from services.payment_service import PayMongoGateway

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")


async def main(client_id=None):
    await connect_db()
    try:
        billing = PaymentSynchronizer(get_store(), PayMongoGateway())
        result = await billing.generate_payments_from_deliveries(client_id)
        print(f"Created : {result['created']}")
        print(f"Skipped : {result['skipped']}")
        print(f"Failed  : {result['failed']}")
        for cid in result["clients"]:
            print(f"  reconciled client {cid}")
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--client", dest="client_id", default=None)
    args = parser.parse_args()
    asyncio.run(main(args.client_id))
