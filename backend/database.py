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
            # tz_aware so stored datetimes compare against datetime.now(timezone.utc)
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
        """Create MongoDB indexes. Unique indexes double as idempotency guards."""
        try:
            # Subscriber mirrors - one per account, customer lookup for processor events
            await self.db.subscriber_mirrors.create_index("subscriber_id", unique=True)
            try:
                await self.db.subscriber_mirrors.create_index("customer_ref", unique=True, sparse=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.subscriber_mirrors.create_index("subscription_ref", sparse=True)
            await self.db.subscriber_mirrors.create_index("status")

            # Webhook endpoints - dispatcher lookup by event type
            await self.db.webhook_endpoints.create_index("endpoint_id", unique=True)
            await self.db.webhook_endpoints.create_index([("enabled", 1), ("event_types", 1)])
            await self.db.webhook_endpoints.create_index("account_id")

            # Webhook events - correlation id makes emission idempotent
            await self.db.webhook_events.create_index("event_id", unique=True)
            await self.db.webhook_events.create_index("correlation_id", unique=True)
            await self.db.webhook_events.create_index([("subscriber_id", 1), ("created_at", -1)])

            # Delivery attempts - retry sweep and per-endpoint history
            await self.db.webhook_deliveries.create_index("attempt_id", unique=True)
            await self.db.webhook_deliveries.create_index(
                [("event_id", 1), ("endpoint_id", 1)],
                unique=True
            )
            await self.db.webhook_deliveries.create_index([("status", 1), ("next_retry_at", 1)])
            await self.db.webhook_deliveries.create_index([("endpoint_id", 1), ("created_at", -1)])

            # Lifecycle notice markers - one notice per subscriber + notice type + window
            await self.db.lifecycle_notices.create_index("notice_key", unique=True)
            await self.db.lifecycle_notices.create_index("subscriber_id")

            # Stripe webhook idempotency - duplicate event_id must not process twice
            try:
                await self.db.stripe_events.create_index("event_id", unique=True)
            except Exception:
                pass

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("subscriber_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
