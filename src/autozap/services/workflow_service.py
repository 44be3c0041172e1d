from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import ValidationError

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.validation_utils import validation_fields

# Database
from autozap.database.app_db import AppDB

# Services
from autozap.services.workflow_graph_service import WorkflowGraphService

# Models
from autozap.models.workflow_data import WorkflowData
from autozap.models.request.workflow_request import WorkflowUpdateRequest

# Exceptions
from autozap.exceptions.app_exception import ValidationException, NotFoundException


class WorkflowService:
    def __init__(self, log_util: LogUtil, app_db: AppDB, workflow_graph_service: WorkflowGraphService):
        self.log_util = log_util
        self.app_db = app_db
        self.workflow_graph_service = workflow_graph_service

    async def _check_instance(self, user_id: str, instance_id: Optional[str]) -> None:
        if not instance_id:
            return
        instance = await self.app_db.get_instance(instance_id)
        if instance is None or instance.user_id != user_id:
            raise ValidationException("Instance not found or does not belong to the user")

    def _build_workflow(self, workflow_data: Dict[str, Any]) -> WorkflowData:
        """
        Validate the payload, normalize AI-only flows and check the graph.

        AI-only flows keep no nodes or edges; manual flows drop the business profile.
        """
        try:
            workflow = WorkflowData.model_validate(workflow_data)
        except ValidationError as e:
            raise ValidationException(message="Invalid workflow data", fields=validation_fields(e))

        if workflow.is_ai_only:
            workflow.nodes = []
            workflow.edges = []
        else:
            workflow.ai_business_details = None

        workflow.uses_ai = self.workflow_graph_service.derive_uses_ai(workflow.is_ai_only, workflow.nodes)
        self.workflow_graph_service.validate_workflow(workflow)
        return workflow

    async def list_workflows(self, user_id: str) -> List[WorkflowData]:
        return await self.app_db.get_workflows(user_id)

    async def create_workflow(self, user_id: str, workflow_data: Dict[str, Any]) -> WorkflowData:
        workflow = self._build_workflow({**workflow_data, "id": None, "user_id": user_id})
        await self._check_instance(user_id, workflow.instance_id)
        now = datetime.utcnow()
        workflow.created_at = now
        workflow.updated_at = now

        saved = await self.app_db.create_workflow(workflow)
        self.log_util.info(
            service_name="WorkflowService",
            message=f"Workflow '{saved.name}' ({saved.id}) created for user {user_id}"
        )
        return saved

    async def get_workflow(self, user_id: str, workflow_id: str) -> WorkflowData:
        workflow = await self.app_db.get_workflow(workflow_id, user_id=user_id)
        if workflow is None:
            raise NotFoundException("Workflow")
        return workflow

    async def update_workflow(self, user_id: str, workflow_id: str, update: WorkflowUpdateRequest) -> WorkflowData:
        existing = await self.get_workflow(user_id, workflow_id)

        merged = existing.model_dump()
        merged.update(update.model_dump(exclude_unset=True))
        merged["id"] = existing.id
        merged["user_id"] = user_id
        merged["created_at"] = existing.created_at

        workflow = self._build_workflow(merged)
        if "instance_id" in update.model_fields_set:
            await self._check_instance(user_id, workflow.instance_id)
        workflow.updated_at = datetime.utcnow()

        saved = await self.app_db.update_workflow(workflow)
        if saved is None:
            raise NotFoundException("Workflow")
        self.log_util.info(service_name="WorkflowService", message=f"Workflow {workflow_id} updated by user {user_id}")
        return saved

    async def delete_workflow(self, user_id: str, workflow_id: str) -> Dict[str, Any]:
        deleted = await self.app_db.delete_workflow(workflow_id, user_id)
        if not deleted:
            raise NotFoundException("Workflow")
        self.log_util.info(service_name="WorkflowService", message=f"Workflow {workflow_id} deleted by user {user_id}")
        return {"success": True}

    async def toggle_workflow(self, user_id: str, workflow_id: str) -> WorkflowData:
        workflow = await self.get_workflow(user_id, workflow_id)
        workflow.is_active = not workflow.is_active
        workflow.updated_at = datetime.utcnow()
        saved = await self.app_db.update_workflow(workflow)
        if saved is None:
            raise NotFoundException("Workflow")
        self.log_util.info(
            service_name="WorkflowService",
            message=f"Workflow {workflow_id} {'activated' if saved.is_active else 'deactivated'} by user {user_id}"
        )
        return saved
