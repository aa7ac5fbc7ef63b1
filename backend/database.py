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
            self.client = AsyncIOMotorClient(mongo_url)
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
        """Create MongoDB indexes for task, template and queue lookups."""
        try:
            await self.db.tasks.create_index("task_id", unique=True)
            await self.db.tasks.create_index([("client_id", 1), ("created_at", -1)])
            await self.db.tasks.create_index([("status", 1), ("updated_at", -1)])
            await self.db.tasks.create_index("service_id")

            await self.db.task_events.create_index([("task_id", 1), ("created_at", 1)])

            await self.db.clients.create_index("client_id", unique=True)
            await self.db.services.create_index("service_id", unique=True)
            await self.db.document_templates.create_index("template_id", unique=True)
            await self.db.document_templates.create_index("status")
            await self.db.template_backups.create_index("backup_id", unique=True)
            await self.db.field_schema_snapshots.create_index("snapshot_id", unique=True)
            await self.db.field_schema_snapshots.create_index([("created_at", -1)])

            # Client follow-up queue (outbox): one job per completed task
            try:
                await self.db.client_update_queue.create_index("task_id", unique=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.client_update_queue.create_index([("status", 1), ("next_run_at", 1)])

            # Audit log indexes - for resource timeline queries
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")


# Global database instance
database = Database()
