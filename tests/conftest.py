import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any

import pytest

from autozap.models.workflow_data import WorkflowData
from autozap.models.execution_data import WorkflowExecution
from autozap.models.wait_data import WorkflowWait
from autozap.models.message_data import MessageData
from autozap.models.conversation_status_data import ConversationStatusData
from autozap.models.instance_data import InstanceData
from autozap.models.ai_metric_data import AIMetricData
from autozap.services.workflow_graph_service import WorkflowGraphService
from autozap.services.conversation_status_service import ConversationStatusService
from autozap.services.workflow_executor_service import WorkflowExecutorService


def _new_id() -> str:
    return uuid.uuid4().hex[:24]


class FakeLogUtil:
    def __init__(self):
        self.records: List[tuple] = []

    def _log(self, level: str, service_name: str, message: str):
        self.records.append((level, service_name, message))

    def info(self, service_name: str, message: str):
        self._log("info", service_name, message)

    def error(self, service_name: str, message: str):
        self._log("error", service_name, message)

    def warning(self, service_name: str, message: str):
        self._log("warning", service_name, message)

    def debug(self, service_name: str, message: str):
        self._log("debug", service_name, message)

    def messages(self, level: str) -> List[str]:
        return [message for record_level, _, message in self.records if record_level == level]


class FakeEnvironmentUtils:
    def __init__(self, **overrides):
        self.env_variables = {
            "OPENAI_API_KEY": "sk-test",
            "OPENAI_BASE_URL": "https://api.openai.test/v1",
            "OPENAI_CHAT_MODEL": "gpt-4o-mini",
            "AI_CACHE_TTL_SECONDS": 3600,
            "WHATSAPP_API_URL": "https://graph.facebook.test/v18.0",
            "WAIT_CHECK_INTERVAL_SECONDS": 5,
            "MAX_WORKFLOW_ITERATIONS": 100,
        }
        self.env_variables.update(overrides)

    def get_env_variable(self, variable_name: str):
        if variable_name not in self.env_variables:
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]


class FakeAppDB:
    """
    In-memory stand-in for AppDB with the same method surface and ordering rules
    """

    def __init__(self):
        self.workflows: Dict[str, WorkflowData] = {}
        self.executions: Dict[tuple, WorkflowExecution] = {}
        self.waits: Dict[str, WorkflowWait] = {}
        self.messages: List[MessageData] = []
        self.contacts: Dict[tuple, str] = {}
        self.statuses: Dict[tuple, ConversationStatusData] = {}
        self.instances: Dict[str, InstanceData] = {}
        self.ai_metrics: List[AIMetricData] = []
        self.ai_cache: Dict[str, tuple] = {}
        self.records: Dict[str, Dict[str, Dict[str, Any]]] = {}

    # Workflows
    async def create_workflow(self, workflow: WorkflowData) -> WorkflowData:
        saved = workflow.model_copy(update={"id": _new_id()})
        self.workflows[saved.id] = saved
        return saved

    async def get_workflow(self, workflow_id: str, user_id: Optional[str] = None) -> Optional[WorkflowData]:
        workflow = self.workflows.get(workflow_id)
        if workflow is None or (user_id is not None and workflow.user_id != user_id):
            return None
        return workflow.model_copy(deep=True)

    async def get_workflows(self, user_id: str) -> List[WorkflowData]:
        workflows = [w for w in self.workflows.values() if w.user_id == user_id]
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    async def get_active_workflows(self, user_id: str, instance_id: str) -> List[WorkflowData]:
        workflows = [
            w for w in self.workflows.values()
            if w.user_id == user_id and w.is_active and w.instance_id in (instance_id, None)
        ]
        return sorted(workflows, key=lambda w: w.created_at, reverse=True)

    async def update_workflow(self, workflow: WorkflowData) -> Optional[WorkflowData]:
        stored = self.workflows.get(workflow.id)
        if stored is None or stored.user_id != workflow.user_id:
            return None
        self.workflows[workflow.id] = workflow.model_copy(update={"updated_at": datetime.utcnow()})
        return self.workflows[workflow.id]

    async def delete_workflow(self, workflow_id: str, user_id: str) -> bool:
        workflow = self.workflows.get(workflow_id)
        if workflow is None or workflow.user_id != user_id:
            return False
        del self.workflows[workflow_id]
        return True

    # Executions
    async def get_execution(self, instance_id: str, contact_number: str) -> Optional[WorkflowExecution]:
        execution = self.executions.get((instance_id, contact_number))
        return execution.model_copy(deep=True) if execution else None

    async def save_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        key = (execution.instance_id, execution.contact_number)
        existing = self.executions.get(key)
        saved = execution.model_copy(deep=True, update={"id": existing.id if existing else _new_id()})
        self.executions[key] = saved
        return saved.model_copy(deep=True)

    async def delete_execution(self, instance_id: str, contact_number: str) -> bool:
        return self.executions.pop((instance_id, contact_number), None) is not None

    # Waits
    async def save_wait(self, wait: WorkflowWait) -> WorkflowWait:
        saved = wait.model_copy(update={"id": _new_id()})
        self.waits[saved.id] = saved
        return saved

    async def get_due_waits(self, now: Optional[datetime] = None) -> List[WorkflowWait]:
        now = now or datetime.utcnow()
        due = [w for w in self.waits.values() if not w.processed and w.resume_at <= now]
        return sorted(due, key=lambda w: w.resume_at)

    async def mark_wait_processed(self, wait_id: str) -> bool:
        wait = self.waits.get(wait_id)
        if wait is None or wait.processed:
            return False
        wait.processed = True
        return True

    async def has_pending_wait(self, instance_id: str, contact_number: str, node_id: str) -> bool:
        return any(
            w.instance_id == instance_id and w.contact_number == contact_number and w.node_id == node_id and not w.processed
            for w in self.waits.values()
        )

    async def delete_pending_waits(self, instance_id: str, contact_number: str) -> int:
        pending = [
            wait_id for wait_id, w in self.waits.items()
            if w.instance_id == instance_id and w.contact_number == contact_number and not w.processed
        ]
        for wait_id in pending:
            del self.waits[wait_id]
        return len(pending)

    # Messages
    async def save_message(self, message: MessageData) -> MessageData:
        saved = message.model_copy(update={"id": _new_id()})
        self.messages.append(saved)
        return saved

    def _conversation(self, instance_id: str, contact_number: str) -> List[MessageData]:
        return [
            m for m in self.messages
            if m.instance_id == instance_id and m.contact_number == contact_number
        ]

    async def get_recent_messages(self, instance_id: str, contact_number: str, limit: int) -> List[MessageData]:
        messages = sorted(self._conversation(instance_id, contact_number), key=lambda m: m.timestamp, reverse=True)
        return messages[:limit]

    async def get_conversation_messages(self, instance_id: str, contact_number: str) -> List[MessageData]:
        return sorted(self._conversation(instance_id, contact_number), key=lambda m: m.timestamp)

    async def get_last_button_message(self, instance_id: str, contact_number: str) -> Optional[MessageData]:
        buttons = [
            m for m in self.messages
            if m.instance_id == instance_id and m.from_number == contact_number
            and not m.is_from_me and m.message_type == "button"
        ]
        return max(buttons, key=lambda m: m.timestamp) if buttons else None

    async def get_messages_for_instances(self, instance_ids: List[str]) -> List[MessageData]:
        messages = [m for m in self.messages if m.instance_id in instance_ids]
        return sorted(messages, key=lambda m: m.timestamp, reverse=True)

    # Contacts
    async def upsert_contact_name(self, instance_id: str, phone_number: str, name: str) -> None:
        self.contacts[(instance_id, phone_number)] = name

    async def get_contact_names(self, instance_ids: List[str]) -> Dict[str, str]:
        return {
            f"{instance_id}-{phone}": name
            for (instance_id, phone), name in self.contacts.items()
            if instance_id in instance_ids and name
        }

    # Conversation status
    async def get_conversation_status(self, instance_id: str, contact_number: str) -> Optional[ConversationStatusData]:
        return self.statuses.get((instance_id, contact_number))

    async def set_conversation_status(self, instance_id: str, contact_number: str, status: str) -> ConversationStatusData:
        current = self.statuses.get((instance_id, contact_number))
        if current is None:
            current = ConversationStatusData(id=_new_id(), instance_id=instance_id, contact_number=contact_number)
            self.statuses[(instance_id, contact_number)] = current
        current.status = status
        current.updated_at = datetime.utcnow()
        return current

    async def create_conversation_status_if_missing(self, instance_id: str, contact_number: str, status: str) -> ConversationStatusData:
        key = (instance_id, contact_number)
        if key not in self.statuses:
            self.statuses[key] = ConversationStatusData(
                id=_new_id(), instance_id=instance_id, contact_number=contact_number, status=status
            )
        return self.statuses[key]

    async def get_conversation_statuses(self, instance_ids: List[str]) -> List[ConversationStatusData]:
        return [s for s in self.statuses.values() if s.instance_id in instance_ids]

    # Instances
    def add_instance(self, **fields) -> InstanceData:
        defaults = {
            "id": _new_id(),
            "user_id": "user-1",
            "name": "Loja Centro",
            "phone": "5511900000000",
            "phone_id": "phone-123",
            "access_token": "token-abc",
            "webhook_verify_token": "verify-me",
            "status": "connected",
        }
        defaults.update(fields)
        instance = InstanceData(**defaults)
        self.instances[instance.id] = instance
        return instance

    async def get_instance(self, instance_id: str) -> Optional[InstanceData]:
        return self.instances.get(instance_id)

    async def get_instance_by_phone_id(self, phone_id: str) -> Optional[InstanceData]:
        for instance in self.instances.values():
            if instance.phone_id == phone_id:
                return instance
        return None

    async def get_instances(self, user_id: str) -> List[InstanceData]:
        return [i for i in self.instances.values() if i.user_id == user_id]

    # AI metrics
    async def save_ai_metric(self, metric: AIMetricData) -> AIMetricData:
        saved = metric.model_copy(update={"id": _new_id()})
        self.ai_metrics.append(saved)
        return saved

    async def get_ai_metrics_summary(self, user_id: str) -> Dict[str, Any]:
        metrics = [m for m in self.ai_metrics if m.user_id == user_id]
        if not metrics:
            return {}
        return {
            "total_calls": len(metrics),
            "failed_calls": sum(1 for m in metrics if not m.success),
            "cached_calls": sum(1 for m in metrics if m.cached),
            "prompt_tokens": sum(m.prompt_tokens for m in metrics),
            "completion_tokens": sum(m.completion_tokens for m in metrics),
            "total_tokens": sum(m.total_tokens for m in metrics),
            "total_cost": sum(m.cost for m in metrics),
            "average_duration_ms": sum(m.duration_ms for m in metrics) / len(metrics),
        }

    async def get_cached_ai_response(self, key: str, now: Optional[datetime] = None) -> Optional[str]:
        entry = self.ai_cache.get(key)
        if entry is None or entry[1] <= (now or datetime.utcnow()):
            return None
        return entry[0]

    async def set_cached_ai_response(self, key: str, response: str, expires_at: datetime) -> None:
        self.ai_cache[key] = (response, expires_at)

    # Generic records
    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self.records.setdefault(collection, {})

    async def insert_record(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        saved = {key: value for key, value in record.items() if key != "id"}
        saved["id"] = _new_id()
        self._collection(collection)[saved["id"]] = saved
        return dict(saved)

    async def find_records(self, collection: str, query: Dict[str, Any], sort_field: str = "created_at") -> List[Dict[str, Any]]:
        matches = [
            dict(record) for record in self._collection(collection).values()
            if all(record.get(key) == value for key, value in query.items())
        ]
        return sorted(matches, key=lambda record: record.get(sort_field) or datetime.min, reverse=True)

    async def find_record(self, collection: str, record_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        record = self._collection(collection).get(record_id)
        if record is None or record.get("user_id") != user_id:
            return None
        return dict(record)

    async def update_record(self, collection: str, record_id: str, user_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self._collection(collection).get(record_id)
        if record is None or record.get("user_id") != user_id:
            return None
        record.update({k: v for k, v in updates.items() if k not in ("id", "user_id", "created_at")})
        return dict(record)

    async def update_records(self, collection: str, query: Dict[str, Any], updates: Dict[str, Any]) -> int:
        modified = 0
        for record in self._collection(collection).values():
            if all(record.get(key) == value for key, value in query.items()):
                record.update(updates)
                modified += 1
        return modified

    async def delete_record(self, collection: str, record_id: str, user_id: str) -> bool:
        record = self._collection(collection).get(record_id)
        if record is None or record.get("user_id") != user_id:
            return False
        del self._collection(collection)[record_id]
        return True


class FakeWhatsAppCloudService:
    """
    Records outbound sends; kinds listed in fail_kinds raise instead of sending
    """

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_kinds: set = set()

    async def _record(self, kind: str, instance_id: str, to: str, **fields) -> str:
        if kind in self.fail_kinds:
            raise RuntimeError(f"{kind} send failed")
        self.sent.append({"kind": kind, "instance_id": instance_id, "to": to, **fields})
        return f"wamid.{len(self.sent)}"

    async def send_text(self, instance_id: str, to: str, message: str):
        return await self._record("text", instance_id, to, text=message)

    async def send_interactive_buttons(self, instance_id: str, to: str, message: str, buttons: List[Dict[str, str]]):
        return await self._record("buttons", instance_id, to, text=message, buttons=buttons)

    async def send_image(self, instance_id: str, to: str, image_url: str, caption: Optional[str] = None):
        return await self._record("image", instance_id, to, url=image_url, text=caption)

    async def send_video(self, instance_id: str, to: str, video_url: str, caption: Optional[str] = None):
        return await self._record("video", instance_id, to, url=video_url, text=caption)

    async def send_document(self, instance_id: str, to: str, document_url: str, filename: str, caption: Optional[str] = None):
        return await self._record("document", instance_id, to, url=document_url, filename=filename, text=caption)

    def texts(self) -> List[str]:
        return [entry.get("text") for entry in self.sent]


class FakeAIService:
    def __init__(self, reply: str = "Resposta da IA"):
        self.reply = reply
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []
        self.recorded: List[AIMetricData] = []

    async def generate_response(self, user_message: str, **kwargs) -> str:
        self.calls.append({"user_message": user_message, **kwargs})
        if self.error is not None:
            raise self.error
        return self.reply

    async def record_usage(self, metric: AIMetricData) -> None:
        self.recorded.append(metric)


@pytest.fixture
def log_util():
    return FakeLogUtil()


@pytest.fixture
def environment_utils():
    return FakeEnvironmentUtils()


@pytest.fixture
def make_environment():
    """
    Environment with overridden variables, e.g. make_environment(OPENAI_API_KEY="")
    """
    return FakeEnvironmentUtils


@pytest.fixture
def app_db():
    return FakeAppDB()


@pytest.fixture
def whatsapp():
    return FakeWhatsAppCloudService()


@pytest.fixture
def ai_service():
    return FakeAIService()


@pytest.fixture
def instance(app_db):
    return app_db.add_instance()


@pytest.fixture
def graph_service(log_util):
    return WorkflowGraphService(log_util=log_util)


@pytest.fixture
def status_service(log_util, app_db):
    return ConversationStatusService(log_util=log_util, app_db=app_db)


@pytest.fixture
def executor(log_util, environment_utils, app_db, whatsapp, ai_service, status_service, graph_service):
    return WorkflowExecutorService(
        log_util=log_util,
        environment_utils=environment_utils,
        app_db=app_db,
        whatsapp_cloud_service=whatsapp,
        ai_service=ai_service,
        conversation_status_service=status_service,
        workflow_graph_service=graph_service
    )


@pytest.fixture
def make_workflow(app_db):
    """
    Store a workflow for user-1 built from node and edge dicts
    """
    async def _make(nodes, edges, trigger="oi", **fields) -> WorkflowData:
        workflow = WorkflowData(
            name=fields.pop("name", "Atendimento"),
            trigger=trigger,
            user_id=fields.pop("user_id", "user-1"),
            nodes=nodes,
            edges=edges,
            **fields
        )
        return await app_db.create_workflow(workflow)
    return _make
