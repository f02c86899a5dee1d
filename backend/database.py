from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes. Uniqueness here backs the engine's idempotency keys."""
        try:
            await self.db.users.create_index("user_id", unique=True)

            # Payment requests - external_reference is the reconciliation key
            await self.db.payment_requests.create_index("request_id", unique=True)
            await self.db.payment_requests.create_index(
                "external_reference",
                unique=True,
                partialFilterExpression={"external_reference": {"$type": "string"}},
            )
            # Present only while initiated/processing: one open request per user
            await self.db.payment_requests.create_index(
                "open_slot_user_id", unique=True, sparse=True
            )
            await self.db.payment_requests.create_index([("user_id", 1), ("created_at", -1)])
            await self.db.payment_requests.create_index([("status", 1), ("expires_at", 1)])

            # Subscription periods - append-only; one per payment, linear chain per user
            await self.db.subscription_periods.create_index("period_id", unique=True)
            await self.db.subscription_periods.create_index("source_payment_id", unique=True)
            await self.db.subscription_periods.create_index(
                [("user_id", 1), ("base_period_id", 1)], unique=True
            )
            await self.db.subscription_periods.create_index([("user_id", 1), ("expires_at", -1)])

            # Match edges keyed by ordered user pair
            await self.db.matches.create_index("match_key", unique=True)
            await self.db.matches.create_index("match_id", unique=True)
            await self.db.matches.create_index([("finalized", 1), ("created_at", 1)])
            await self.db.chat_threads.create_index("match_key", unique=True)
            await self.db.chat_threads.create_index("chat_id", unique=True)
            await self.db.messages.create_index([("chat_id", 1), ("created_at", 1)])

            await self.db.photos.create_index("photo_id", unique=True)

            # Notification outbox - exactly-once enqueue
            await self.db.notifications.create_index(
                "idempotency_key", unique=True, sparse=True
            )
            await self.db.notifications.create_index([("recipient", 1), ("created_at", -1)])
            await self.db.notifications.create_index([("dispatched", 1), ("created_at", 1)])

            await self.db.audit_logs.create_index([("user_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist with different options, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
