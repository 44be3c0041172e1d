from motor.motor_asyncio import AsyncIOMotorClient
from bson import ObjectId
from bson.errors import InvalidId
import threading
import asyncio
from typing import Optional, List, Dict, Any, Type, TypeVar
from datetime import datetime
import weakref
from pymongo import ReturnDocument, DESCENDING, ASCENDING
from pymongo.errors import NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure, DuplicateKeyError
from pydantic import BaseModel

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.environment_utils import EnvironmentUtils

# Exceptions
from autozap.exceptions.app_exception import DBException, ConflictException

# Models
from autozap.models.workflow_data import WorkflowData
from autozap.models.execution_data import WorkflowExecution
from autozap.models.wait_data import WorkflowWait
from autozap.models.message_data import MessageData
from autozap.models.conversation_status_data import ConversationStatusData
from autozap.models.instance_data import InstanceData
from autozap.models.ai_metric_data import AIMetricData

ModelT = TypeVar("ModelT", bound=BaseModel)

COLLECTION_NAMES = (
    "instances",
    "workflows",
    "workflow_executions",
    "workflow_waits",
    "messages",
    "contacts",
    "conversation_status",
    "ai_metrics",
    "ai_cache",
    "clients",
    "appointments",
    "services",
    "catalogs",
    "orders",
    "pix_keys",
    "working_hours",
)

"""
Database class for every AutoZap collection
"""
class AppDB:
    def __init__(self, log_util: LogUtil, environment_utils: EnvironmentUtils):

        # Initialize logger
        self.log_util = log_util

        # Initialize environment utils
        self.environment_utils = environment_utils

        # Mongo connection
        self.mongo_uri = self.environment_utils.get_env_variable("MONGO_URI")
        self.db_name = self.environment_utils.get_env_variable("MONGO_DB_NAME")

        # Mongo Connection Pool Configs
        self.max_pool_size = 50
        self.min_pool_size = 0  # Create connections on-demand instead of at startup
        self.max_idle_time_ms = 30000
        self.wait_queue_timeout_ms = 10000
        self.connect_timeout_ms = 10000
        self.server_selection_timeout_ms = 10000
        self.socket_timeout_ms = 10000

        # MongoDB client - initialized lazily on first use, one per event loop
        self._clients = {}  # {loop_id: {client, db, collections, loop}}

        # Thread-safe initialization lock
        self._client_lock = threading.Lock()

    def _get_client_for_current_loop(self) -> Dict[str, Any]:
        """
        Thread-safe method to get the MongoDB client and collections for the current event loop.
        Motor clients are bound to the loop they were created on, so the wait
        scheduler and request handlers each get their own client when they run on different loops.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("No event loop available. Database methods must be called from an async context.")

        loop_id = id(loop)

        if loop_id in self._clients:
            return self._clients[loop_id]

        with self._client_lock:
            # Double-check after acquiring lock
            if loop_id in self._clients:
                return self._clients[loop_id]

            client = AsyncIOMotorClient(
                self.mongo_uri,
                maxPoolSize=self.max_pool_size,
                minPoolSize=self.min_pool_size,
                maxIdleTimeMS=self.max_idle_time_ms,
                waitQueueTimeoutMS=self.wait_queue_timeout_ms,
                connectTimeoutMS=self.connect_timeout_ms,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                retryWrites=True,
                retryReads=True
            )
            db = client[self.db_name]

            client_data = {
                'client': client,
                'db': db,
                'collections': {name: db[name] for name in COLLECTION_NAMES},
                'loop': weakref.ref(loop)
            }
            self._clients[loop_id] = client_data

            self.log_util.info(
                service_name="AppDB",
                message=f"MongoDB client initialized for event loop {loop_id} (lazy initialization)"
            )

            return client_data

    def _collection(self, name: str):
        return self._get_client_for_current_loop()['collections'][name]

    def close(self):
        """
        Close all MongoDB clients and cleanup resources
        """
        with self._client_lock:
            for loop_id, client_data in self._clients.items():
                try:
                    client_data['client'].close()
                except Exception as e:
                    self.log_util.warning(
                        service_name="AppDB",
                        message=f"Error closing client for loop {loop_id}: {str(e)}"
                    )
            self._clients.clear()
            self.log_util.info(service_name="AppDB", message="All MongoDB clients closed")

    def _handle_db_operation(self, operation_name: str, error: Exception) -> None:
        """
        Handle database operation errors with appropriate logging and exception wrapping.

        Args:
            operation_name: Name of the operation that failed
            error: The exception that occurred
        """
        if isinstance(error, DuplicateKeyError):
            self.log_util.warning(
                service_name="AppDB",
                message=f"Duplicate key in {operation_name}: {str(error)}"
            )
            raise ConflictException("Record already exists")
        if isinstance(error, (NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)):
            self.log_util.error(
                service_name="AppDB",
                message=f"Database connection error in {operation_name}: {str(error)}"
            )
            raise DBException(
                message=f"Database connection error: {str(error)}",
                status_code=503  # Service Unavailable
            )
        self.log_util.error(
            service_name="AppDB",
            message=f"Error in {operation_name}: {str(error)}"
        )
        raise DBException(
            message=f"Database error: {str(error)}",
            status_code=500
        )

    @staticmethod
    def _object_id(record_id: Optional[str]) -> Optional[ObjectId]:
        if not record_id:
            return None
        try:
            return ObjectId(record_id)
        except (InvalidId, TypeError):
            return None

    @staticmethod
    def _serialize(document: Dict[str, Any]) -> Dict[str, Any]:
        document["id"] = str(document.pop("_id"))
        return document

    def _to_model(self, document: Optional[Dict[str, Any]], model: Type[ModelT]) -> Optional[ModelT]:
        if document is None:
            return None
        return model.model_validate(self._serialize(document))

    # Workflow operations
    async def create_workflow(self, workflow: WorkflowData) -> WorkflowData:
        try:
            workflow_dict = workflow.model_dump(exclude={"id"})
            result = await self._collection('workflows').insert_one(workflow_dict)
            workflow_dict["_id"] = result.inserted_id
            return self._to_model(workflow_dict, WorkflowData)
        except Exception as e:
            self._handle_db_operation("create_workflow", e)

    async def get_workflow(self, workflow_id: str, user_id: Optional[str] = None) -> Optional[WorkflowData]:
        """
        Get a workflow by ID, restricted to the tenant when user_id is given
        """
        object_id = self._object_id(workflow_id)
        if object_id is None:
            return None
        try:
            query: Dict[str, Any] = {"_id": object_id}
            if user_id is not None:
                query["user_id"] = user_id
            document = await self._collection('workflows').find_one(query)
            return self._to_model(document, WorkflowData)
        except Exception as e:
            self._handle_db_operation("get_workflow", e)

    async def get_workflows(self, user_id: str) -> List[WorkflowData]:
        """
        Get all workflows of a tenant, newest first
        """
        try:
            cursor = self._collection('workflows').find({"user_id": user_id}).sort("created_at", DESCENDING)
            return [self._to_model(document, WorkflowData) async for document in cursor]
        except Exception as e:
            self._handle_db_operation("get_workflows", e)

    async def get_active_workflows(self, user_id: str, instance_id: str) -> List[WorkflowData]:
        """
        Get the active workflows that apply to an instance (bound to it or to no instance), newest first
        """
        try:
            cursor = self._collection('workflows').find({
                "user_id": user_id,
                "is_active": True,
                "instance_id": {"$in": [instance_id, None]}
            }).sort("created_at", DESCENDING)
            return [self._to_model(document, WorkflowData) async for document in cursor]
        except Exception as e:
            self._handle_db_operation("get_active_workflows", e)

    async def update_workflow(self, workflow: WorkflowData) -> Optional[WorkflowData]:
        """
        Replace a stored workflow with the given one (nodes and edges included)
        """
        object_id = self._object_id(workflow.id)
        if object_id is None:
            return None
        try:
            workflow_dict = workflow.model_dump(exclude={"id"})
            workflow_dict["updated_at"] = datetime.utcnow()
            document = await self._collection('workflows').find_one_and_replace(
                {"_id": object_id, "user_id": workflow.user_id},
                workflow_dict,
                return_document=ReturnDocument.AFTER
            )
            return self._to_model(document, WorkflowData)
        except Exception as e:
            self._handle_db_operation("update_workflow", e)

    async def delete_workflow(self, workflow_id: str, user_id: str) -> bool:
        object_id = self._object_id(workflow_id)
        if object_id is None:
            return False
        try:
            result = await self._collection('workflows').delete_one({"_id": object_id, "user_id": user_id})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("delete_workflow", e)

    # Execution operations
    async def get_execution(self, instance_id: str, contact_number: str) -> Optional[WorkflowExecution]:
        try:
            document = await self._collection('workflow_executions').find_one({
                "instance_id": instance_id,
                "contact_number": contact_number
            })
            return self._to_model(document, WorkflowExecution)
        except Exception as e:
            self._handle_db_operation("get_execution", e)

    async def save_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        """
        Insert or replace the execution of a contact (one per instance and contact)
        """
        try:
            execution_dict = execution.model_dump(exclude={"id", "created_at"})
            execution_dict["updated_at"] = datetime.utcnow()
            document = await self._collection('workflow_executions').find_one_and_update(
                {"instance_id": execution.instance_id, "contact_number": execution.contact_number},
                {"$set": execution_dict, "$setOnInsert": {"created_at": execution.created_at}},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            return self._to_model(document, WorkflowExecution)
        except Exception as e:
            self._handle_db_operation("save_execution", e)

    async def delete_execution(self, instance_id: str, contact_number: str) -> bool:
        try:
            result = await self._collection('workflow_executions').delete_one({
                "instance_id": instance_id,
                "contact_number": contact_number
            })
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation("delete_execution", e)

    # Wait operations
    async def save_wait(self, wait: WorkflowWait) -> WorkflowWait:
        try:
            wait_dict = wait.model_dump(exclude={"id"})
            result = await self._collection('workflow_waits').insert_one(wait_dict)
            wait_dict["_id"] = result.inserted_id
            return self._to_model(wait_dict, WorkflowWait)
        except Exception as e:
            self._handle_db_operation("save_wait", e)

    async def get_due_waits(self, now: Optional[datetime] = None) -> List[WorkflowWait]:
        """
        Get all unprocessed waits whose resume_at has passed
        """
        try:
            cursor = self._collection('workflow_waits').find({
                "processed": False,
                "resume_at": {"$lte": now or datetime.utcnow()}
            }).sort("resume_at", ASCENDING)
            return [self._to_model(document, WorkflowWait) async for document in cursor]
        except Exception as e:
            self._handle_db_operation("get_due_waits", e)

    async def mark_wait_processed(self, wait_id: str) -> bool:
        object_id = self._object_id(wait_id)
        if object_id is None:
            return False
        try:
            result = await self._collection('workflow_waits').update_one(
                {"_id": object_id},
                {"$set": {"processed": True, "updated_at": datetime.utcnow()}}
            )
            return result.modified_count > 0
        except Exception as e:
            self._handle_db_operation("mark_wait_processed", e)

    async def has_pending_wait(self, instance_id: str, contact_number: str, node_id: str) -> bool:
        try:
            document = await self._collection('workflow_waits').find_one({
                "instance_id": instance_id,
                "contact_number": contact_number,
                "node_id": node_id,
                "processed": False
            })
            return document is not None
        except Exception as e:
            self._handle_db_operation("has_pending_wait", e)

    async def delete_pending_waits(self, instance_id: str, contact_number: str) -> int:
        """
        Drop the pending waits of a contact, used when a new execution replaces the old one
        """
        try:
            result = await self._collection('workflow_waits').delete_many({
                "instance_id": instance_id,
                "contact_number": contact_number,
                "processed": False
            })
            return result.deleted_count
        except Exception as e:
            self._handle_db_operation("delete_pending_waits", e)

    # Message operations
    async def save_message(self, message: MessageData) -> MessageData:
        try:
            message_dict = message.model_dump(exclude={"id"})
            result = await self._collection('messages').insert_one(message_dict)
            message_dict["_id"] = result.inserted_id
            return self._to_model(message_dict, MessageData)
        except Exception as e:
            self._handle_db_operation("save_message", e)

    @staticmethod
    def _conversation_query(instance_id: str, contact_number: str) -> Dict[str, Any]:
        return {
            "instance_id": instance_id,
            "$or": [
                {"from_number": contact_number, "is_from_me": False},
                {"to_number": contact_number, "is_from_me": True}
            ]
        }

    async def get_recent_messages(self, instance_id: str, contact_number: str, limit: int) -> List[MessageData]:
        """
        Get the last messages exchanged with a contact, most recent first
        """
        try:
            cursor = self._collection('messages').find(
                self._conversation_query(instance_id, contact_number)
            ).sort("timestamp", DESCENDING).limit(limit)
            return [self._to_model(document, MessageData) async for document in cursor]
        except Exception as e:
            self._handle_db_operation("get_recent_messages", e)

    async def get_conversation_messages(self, instance_id: str, contact_number: str) -> List[MessageData]:
        """
        Get every message exchanged with a contact, oldest first
        """
        try:
            cursor = self._collection('messages').find(
                self._conversation_query(instance_id, contact_number)
            ).sort("timestamp", ASCENDING)
            return [self._to_model(document, MessageData) async for document in cursor]
        except Exception as e:
            self._handle_db_operation("get_conversation_messages", e)

    async def get_last_button_message(self, instance_id: str, contact_number: str) -> Optional[MessageData]:
        """
        Get the latest inbound button reply of a contact
        """
        try:
            cursor = self._collection('messages').find({
                "instance_id": instance_id,
                "from_number": contact_number,
                "is_from_me": False,
                "message_type": "button"
            }).sort("timestamp", DESCENDING).limit(1)
            async for document in cursor:
                return self._to_model(document, MessageData)
            return None
        except Exception as e:
            self._handle_db_operation("get_last_button_message", e)

    async def get_messages_for_instances(self, instance_ids: List[str]) -> List[MessageData]:
        """
        Get the messages of several instances, most recent first
        """
        if not instance_ids:
            return []
        try:
            cursor = self._collection('messages').find(
                {"instance_id": {"$in": instance_ids}}
            ).sort("timestamp", DESCENDING)
            return [self._to_model(document, MessageData) async for document in cursor]
        except Exception as e:
            self._handle_db_operation("get_messages_for_instances", e)

    # Contact operations
    async def upsert_contact_name(self, instance_id: str, phone_number: str, name: str) -> None:
        try:
            await self._collection('contacts').update_one(
                {"instance_id": instance_id, "phone_number": phone_number},
                {
                    "$set": {"name": name, "updated_at": datetime.utcnow()},
                    "$setOnInsert": {"created_at": datetime.utcnow()}
                },
                upsert=True
            )
        except Exception as e:
            self._handle_db_operation("upsert_contact_name", e)

    async def get_contact_names(self, instance_ids: List[str]) -> Dict[str, str]:
        """
        Returns {"<instance_id>-<phone_number>": name} for the given instances
        """
        if not instance_ids:
            return {}
        try:
            cursor = self._collection('contacts').find({"instance_id": {"$in": instance_ids}})
            names: Dict[str, str] = {}
            async for document in cursor:
                if document.get("name"):
                    names[f"{document['instance_id']}-{document['phone_number']}"] = document["name"]
            return names
        except Exception as e:
            self._handle_db_operation("get_contact_names", e)

    # Conversation status operations
    async def get_conversation_status(self, instance_id: str, contact_number: str) -> Optional[ConversationStatusData]:
        try:
            document = await self._collection('conversation_status').find_one({
                "instance_id": instance_id,
                "contact_number": contact_number
            })
            return self._to_model(document, ConversationStatusData)
        except Exception as e:
            self._handle_db_operation("get_conversation_status", e)

    async def set_conversation_status(self, instance_id: str, contact_number: str, status: str) -> ConversationStatusData:
        try:
            now = datetime.utcnow()
            document = await self._collection('conversation_status').find_one_and_update(
                {"instance_id": instance_id, "contact_number": contact_number},
                {"$set": {"status": status, "updated_at": now}, "$setOnInsert": {"created_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            return self._to_model(document, ConversationStatusData)
        except Exception as e:
            self._handle_db_operation("set_conversation_status", e)

    async def create_conversation_status_if_missing(self, instance_id: str, contact_number: str, status: str) -> ConversationStatusData:
        """
        Insert a status row only when the conversation has none, leaving existing rows untouched
        """
        try:
            now = datetime.utcnow()
            document = await self._collection('conversation_status').find_one_and_update(
                {"instance_id": instance_id, "contact_number": contact_number},
                {"$setOnInsert": {"status": status, "created_at": now, "updated_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER
            )
            return self._to_model(document, ConversationStatusData)
        except Exception as e:
            self._handle_db_operation("create_conversation_status_if_missing", e)

    async def get_conversation_statuses(self, instance_ids: List[str]) -> List[ConversationStatusData]:
        if not instance_ids:
            return []
        try:
            cursor = self._collection('conversation_status').find({"instance_id": {"$in": instance_ids}})
            return [self._to_model(document, ConversationStatusData) async for document in cursor]
        except Exception as e:
            self._handle_db_operation("get_conversation_statuses", e)

    # Instance operations
    async def get_instance(self, instance_id: str) -> Optional[InstanceData]:
        object_id = self._object_id(instance_id)
        if object_id is None:
            return None
        try:
            document = await self._collection('instances').find_one({"_id": object_id})
            return self._to_model(document, InstanceData)
        except Exception as e:
            self._handle_db_operation("get_instance", e)

    async def get_instance_by_phone_id(self, phone_id: str) -> Optional[InstanceData]:
        try:
            document = await self._collection('instances').find_one({"phone_id": phone_id})
            return self._to_model(document, InstanceData)
        except Exception as e:
            self._handle_db_operation("get_instance_by_phone_id", e)

    async def get_instances(self, user_id: str) -> List[InstanceData]:
        try:
            cursor = self._collection('instances').find({"user_id": user_id})
            return [self._to_model(document, InstanceData) async for document in cursor]
        except Exception as e:
            self._handle_db_operation("get_instances", e)

    # AI metric operations
    async def save_ai_metric(self, metric: AIMetricData) -> AIMetricData:
        try:
            metric_dict = metric.model_dump(exclude={"id"})
            result = await self._collection('ai_metrics').insert_one(metric_dict)
            metric_dict["_id"] = result.inserted_id
            return self._to_model(metric_dict, AIMetricData)
        except Exception as e:
            self._handle_db_operation("save_ai_metric", e)

    async def get_ai_metrics_summary(self, user_id: str) -> Dict[str, Any]:
        """
        Aggregate the AI usage of a tenant
        """
        try:
            pipeline = [
                {"$match": {"user_id": user_id}},
                {"$group": {
                    "_id": None,
                    "total_calls": {"$sum": 1},
                    "failed_calls": {"$sum": {"$cond": ["$success", 0, 1]}},
                    "cached_calls": {"$sum": {"$cond": ["$cached", 1, 0]}},
                    "prompt_tokens": {"$sum": "$prompt_tokens"},
                    "completion_tokens": {"$sum": "$completion_tokens"},
                    "total_tokens": {"$sum": "$total_tokens"},
                    "total_cost": {"$sum": "$cost"},
                    "average_duration_ms": {"$avg": "$duration_ms"}
                }}
            ]
            async for document in self._collection('ai_metrics').aggregate(pipeline):
                document.pop("_id", None)
                return document
            return {}
        except Exception as e:
            self._handle_db_operation("get_ai_metrics_summary", e)

    # AI response cache
    async def get_cached_ai_response(self, key: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        Get a cached reply, ignoring entries the TTL monitor has not removed yet
        """
        try:
            document = await self._collection('ai_cache').find_one({
                "key": key,
                "expires_at": {"$gt": now or datetime.utcnow()}
            })
            return document["response"] if document is not None else None
        except Exception as e:
            self._handle_db_operation("get_cached_ai_response", e)

    async def set_cached_ai_response(self, key: str, response: str, expires_at: datetime) -> None:
        try:
            now = datetime.utcnow()
            await self._collection('ai_cache').update_one(
                {"key": key},
                {
                    "$set": {"response": response, "expires_at": expires_at, "updated_at": now},
                    "$setOnInsert": {"created_at": now}
                },
                upsert=True
            )
        except Exception as e:
            self._handle_db_operation("set_cached_ai_response", e)

    # Generic record operations (clients, appointments, services, catalogs, orders, pix keys, working hours, instances)
    async def insert_record(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        try:
            record = {key: value for key, value in record.items() if key != "id"}
            result = await self._collection(collection).insert_one(record)
            record["_id"] = result.inserted_id
            return self._serialize(record)
        except Exception as e:
            self._handle_db_operation(f"insert_record({collection})", e)

    async def find_records(self, collection: str, query: Dict[str, Any], sort_field: str = "created_at") -> List[Dict[str, Any]]:
        try:
            cursor = self._collection(collection).find(query).sort(sort_field, DESCENDING)
            return [self._serialize(document) async for document in cursor]
        except Exception as e:
            self._handle_db_operation(f"find_records({collection})", e)

    async def find_record(self, collection: str, record_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        object_id = self._object_id(record_id)
        if object_id is None:
            return None
        try:
            document = await self._collection(collection).find_one({"_id": object_id, "user_id": user_id})
            return self._serialize(document) if document is not None else None
        except Exception as e:
            self._handle_db_operation(f"find_record({collection})", e)

    async def update_record(self, collection: str, record_id: str, user_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        object_id = self._object_id(record_id)
        if object_id is None:
            return None
        try:
            updates = {key: value for key, value in updates.items() if key not in ("id", "user_id", "created_at")}
            updates["updated_at"] = datetime.utcnow()
            document = await self._collection(collection).find_one_and_update(
                {"_id": object_id, "user_id": user_id},
                {"$set": updates},
                return_document=ReturnDocument.AFTER
            )
            return self._serialize(document) if document is not None else None
        except Exception as e:
            self._handle_db_operation(f"update_record({collection})", e)

    async def update_records(self, collection: str, query: Dict[str, Any], updates: Dict[str, Any]) -> int:
        try:
            result = await self._collection(collection).update_many(query, {"$set": updates})
            return result.modified_count
        except Exception as e:
            self._handle_db_operation(f"update_records({collection})", e)

    async def delete_record(self, collection: str, record_id: str, user_id: str) -> bool:
        object_id = self._object_id(record_id)
        if object_id is None:
            return False
        try:
            result = await self._collection(collection).delete_one({"_id": object_id, "user_id": user_id})
            return result.deleted_count > 0
        except Exception as e:
            self._handle_db_operation(f"delete_record({collection})", e)
