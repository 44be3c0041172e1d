from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.request_utils import get_user_id

# Services
from autozap.services.workflow_service import WorkflowService

# Models
from autozap.models.request.workflow_request import WorkflowUpdateRequest

# Exceptions
from autozap.exceptions.app_exception import AppException


def create_workflow_api(
    log_util: LogUtil,
    workflow_service: WorkflowService
) -> APIRouter:
    router = APIRouter(
        prefix="/api/workflows",
        tags=["workflows"],
    )

    @router.get("")
    async def list_workflows(request: Request):
        user_id = get_user_id(request)
        try:
            return await workflow_service.list_workflows(user_id=user_id)
        except AppException as e:
            log_util.error(service_name="WorkflowAPI", message=f"Error listing workflows: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("", status_code=201)
    async def create_workflow(request: Request, workflow_data: dict):
        user_id = get_user_id(request)
        try:
            return await workflow_service.create_workflow(user_id=user_id, workflow_data=workflow_data)
        except AppException as e:
            log_util.error(service_name="WorkflowAPI", message=f"Error creating workflow: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/{workflow_id}")
    async def get_workflow(request: Request, workflow_id: str):
        user_id = get_user_id(request)
        try:
            return await workflow_service.get_workflow(user_id=user_id, workflow_id=workflow_id)
        except AppException as e:
            log_util.error(service_name="WorkflowAPI", message=f"Error getting workflow {workflow_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.put("/{workflow_id}")
    async def update_workflow(request: Request, workflow_id: str, update: WorkflowUpdateRequest):
        user_id = get_user_id(request)
        try:
            return await workflow_service.update_workflow(user_id=user_id, workflow_id=workflow_id, update=update)
        except AppException as e:
            log_util.error(service_name="WorkflowAPI", message=f"Error updating workflow {workflow_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.delete("/{workflow_id}")
    async def delete_workflow(request: Request, workflow_id: str):
        user_id = get_user_id(request)
        try:
            return await workflow_service.delete_workflow(user_id=user_id, workflow_id=workflow_id)
        except AppException as e:
            log_util.error(service_name="WorkflowAPI", message=f"Error deleting workflow {workflow_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/{workflow_id}/toggle")
    async def toggle_workflow(request: Request, workflow_id: str):
        user_id = get_user_id(request)
        try:
            return await workflow_service.toggle_workflow(user_id=user_id, workflow_id=workflow_id)
        except AppException as e:
            log_util.error(service_name="WorkflowAPI", message=f"Error toggling workflow {workflow_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
