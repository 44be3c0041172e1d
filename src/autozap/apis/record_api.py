from fastapi import APIRouter, Request, Body
from fastapi.exceptions import HTTPException
from typing import Dict, Any, Optional, Sequence

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.request_utils import get_user_id

# Services
from autozap.services.record_service import RecordService

# Exceptions
from autozap.exceptions.app_exception import AppException


def create_record_api(
    log_util: LogUtil,
    record_service: RecordService,
    prefix: str,
    tag: str,
    dependencies: Optional[Sequence[Any]] = None
) -> APIRouter:
    """
    Create a CRUD router for one record collection.
    List accepts the resource's filter fields as query parameters.
    """
    router = APIRouter(
        prefix=prefix,
        tags=[tag],
        dependencies=list(dependencies or []),
    )
    service_name = f"RecordAPI[{tag}]"

    @router.get("")
    async def list_records(request: Request):
        user_id = get_user_id(request)
        try:
            return await record_service.list_records(user_id=user_id, filters=dict(request.query_params))
        except AppException as e:
            log_util.error(service_name=service_name, message=f"Error listing records: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("", status_code=201)
    async def create_record(request: Request, payload: Dict[str, Any] = Body(...)):
        user_id = get_user_id(request)
        try:
            return await record_service.create_record(user_id=user_id, payload=payload)
        except AppException as e:
            log_util.error(service_name=service_name, message=f"Error creating record: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/{record_id}")
    async def get_record(request: Request, record_id: str):
        user_id = get_user_id(request)
        try:
            return await record_service.get_record(user_id=user_id, record_id=record_id)
        except AppException as e:
            log_util.error(service_name=service_name, message=f"Error getting record {record_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.put("/{record_id}")
    async def update_record(request: Request, record_id: str, payload: Dict[str, Any] = Body(...)):
        user_id = get_user_id(request)
        try:
            return await record_service.update_record(user_id=user_id, record_id=record_id, payload=payload)
        except AppException as e:
            log_util.error(service_name=service_name, message=f"Error updating record {record_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.delete("/{record_id}")
    async def delete_record(request: Request, record_id: str):
        user_id = get_user_id(request)
        try:
            return await record_service.delete_record(user_id=user_id, record_id=record_id)
        except AppException as e:
            log_util.error(service_name=service_name, message=f"Error deleting record {record_id}: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
