"""
Script to create the MongoDB indexes used by the AutoZap service.

- Unique indexes keep one execution, one contact name and one conversation
  status per instance and contact, and one instance per Cloud API phone number
- A TTL index expires cached AI responses
- Query indexes back the webhook lookups, the chat inbox and the wait scheduler
- Safe to run multiple times (create_index is idempotent)

Run this script once per database before starting the service.
"""

import asyncio
from pymongo import ASCENDING, DESCENDING

from autozap.utils.log_utils import LogUtil
from autozap.utils.environment_utils import EnvironmentUtils
from autozap.database.app_db import AppDB

INDEXES = {
    "instances": [
        ([("user_id", ASCENDING)], {}),
        # One instance per Cloud API number across tenants; instances without a phone_id are skipped
        ([("phone_id", ASCENDING)], {"unique": True, "partialFilterExpression": {"phone_id": {"$type": "string"}}}),
    ],
    "workflows": [
        ([("user_id", ASCENDING), ("is_active", ASCENDING)], {}),
        ([("instance_id", ASCENDING)], {}),
    ],
    "workflow_executions": [
        ([("instance_id", ASCENDING), ("contact_number", ASCENDING)], {"unique": True}),
    ],
    "workflow_waits": [
        ([("processed", ASCENDING), ("resume_at", ASCENDING)], {}),
        ([("instance_id", ASCENDING), ("contact_number", ASCENDING), ("node_id", ASCENDING)], {}),
    ],
    "messages": [
        ([("instance_id", ASCENDING), ("from_number", ASCENDING), ("timestamp", DESCENDING)], {}),
        ([("instance_id", ASCENDING), ("to_number", ASCENDING), ("timestamp", DESCENDING)], {}),
    ],
    "contacts": [
        ([("instance_id", ASCENDING), ("phone_number", ASCENDING)], {"unique": True}),
    ],
    "conversation_status": [
        ([("instance_id", ASCENDING), ("contact_number", ASCENDING)], {"unique": True}),
    ],
    "ai_metrics": [
        ([("user_id", ASCENDING), ("created_at", DESCENDING)], {}),
    ],
    "ai_cache": [
        ([("key", ASCENDING)], {"unique": True}),
        # Mongo removes entries once expires_at has passed
        ([("expires_at", ASCENDING)], {"expireAfterSeconds": 0}),
    ],
    "clients": [([("user_id", ASCENDING)], {})],
    "appointments": [([("user_id", ASCENDING), ("date", DESCENDING)], {})],
    "services": [([("user_id", ASCENDING)], {})],
    "catalogs": [([("user_id", ASCENDING)], {})],
    "orders": [([("user_id", ASCENDING)], {})],
    "pix_keys": [([("user_id", ASCENDING), ("is_default", ASCENDING)], {})],
    "working_hours": [([("user_id", ASCENDING), ("day_of_week", ASCENDING)], {})],
}


async def create_indexes():
    """
    Create every index listed in INDEXES.
    """
    log_util = LogUtil()
    environment_utils = EnvironmentUtils(log_util=log_util)
    app_db = AppDB(log_util=log_util, environment_utils=environment_utils)

    try:
        collections = app_db._get_client_for_current_loop()['collections']
        created = 0
        for collection_name, indexes in INDEXES.items():
            for keys, options in indexes:
                name = await collections[collection_name].create_index(keys, **options)
                created += 1
                log_util.info(
                    service_name="CreateIndexes",
                    message=f"Index {name} ready on {collection_name}"
                )
        print(f"\n✅ {created} index(es) ready.")
    except Exception as e:
        log_util.error(
            service_name="CreateIndexes",
            message=f"Error creating indexes: {str(e)}"
        )
        print(f"\n❌ Error creating indexes: {str(e)}")
        raise
    finally:
        app_db.close()


if __name__ == "__main__":
    asyncio.run(create_indexes())
