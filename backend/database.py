from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
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
            self.client = AsyncIOMotorClient(mongo_url)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
            await self._seed_admin_allowlist()
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
        """Create MongoDB indexes for the coaching collections."""
        try:
            # Sessions: lookups by id, by checkout id (verify-payment) and by email+type+status
            await self.db.coaching_sessions.create_index("id", unique=True)
            await self.db.coaching_sessions.create_index("stripe_checkout_session_id", sparse=True)
            await self.db.coaching_sessions.create_index(
                [("email", ASCENDING), ("session_type", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)]
            )
            await self.db.coaching_sessions.create_index([("status", ASCENDING), ("paused_at", DESCENDING)])

            # Chat history is always read in created_at order per session
            await self.db.chat_messages.create_index([("session_id", ASCENDING), ("created_at", ASCENDING)])
            await self.db.session_results.create_index("session_id")

            try:
                await self.db.profiles.create_index("email", unique=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.profiles.create_index("stripe_customer_id", sparse=True)

            try:
                await self.db.discount_codes.create_index("code", unique=True)
            except Exception:
                pass
            await self.db.discount_code_usage.create_index(
                [("discount_code_id", ASCENDING), ("email", ASCENDING)], unique=True
            )

            await self.db.error_logs.create_index([("created_at", DESCENDING)])
            await self.db.error_logs.create_index([("error_type", ASCENDING), ("error_code", ASCENDING)])

            # Webhook idempotency ledger
            await self.db.stripe_events.create_index("event_id", unique=True)

            # Identity
            try:
                await self.db.users.create_index("email", unique=True)
            except Exception:
                pass
            await self.db.users.create_index("user_id", unique=True)
            await self.db.login_tokens.create_index("token_hash", unique=True)
            await self.db.admin_allowlist.create_index("email", unique=True)

            # Audit and delivery trails
            await self.db.audit_logs.create_index([("action", ASCENDING), ("timestamp", DESCENDING)])
            await self.db.audit_logs.create_index([("resource_id", ASCENDING), ("timestamp", DESCENDING)])
            await self.db.message_logs.create_index([("recipient", ASCENDING), ("created_at", DESCENDING)])

            logger.info("Database indexes created successfully")
        except Exception as e:
            logger.warning(f"Index creation warning (may already exist): {e}")

    async def _seed_admin_allowlist(self):
        """Seed the admin allow-list from ADMIN_ALLOWLIST (comma separated emails)."""
        raw = os.getenv("ADMIN_ALLOWLIST", "")
        emails = [e.strip().lower() for e in raw.split(",") if e.strip()]
        for email in emails:
            await self.db.admin_allowlist.update_one(
                {"email": email},
                {"$set": {"email": email}},
                upsert=True,
            )
        if emails:
            logger.info(f"Admin allow-list seeded with {len(emails)} entries")

# Global database instance
database = Database()

