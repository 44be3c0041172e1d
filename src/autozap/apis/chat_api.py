from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException
from typing import Optional

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.request_utils import get_user_id

# Services
from autozap.services.chat_service import ChatService

# Models
from autozap.models.request.chat_request import SendMessageRequest, ConversationStatusRequest

# Exceptions
from autozap.exceptions.app_exception import AppException

CONVERSATION_STATUSES = ("active", "waiting_human", "closed")


def create_chat_api(
    log_util: LogUtil,
    chat_service: ChatService
) -> APIRouter:
    router = APIRouter(
        prefix="/api/chat",
        tags=["chat"],
    )

    @router.get("/conversations")
    async def get_conversations(request: Request, status: Optional[str] = None):
        user_id = get_user_id(request)
        if status is not None and status not in CONVERSATION_STATUSES:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
        try:
            conversations = await chat_service.get_conversations(user_id=user_id, status=status)
            return {"conversations": conversations}
        except AppException as e:
            log_util.error(service_name="ChatAPI", message=f"Error getting conversations: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.get("/messages")
    async def get_messages(request: Request, instanceId: str, contactNumber: str):
        user_id = get_user_id(request)
        try:
            messages = await chat_service.get_messages(user_id=user_id, instance_id=instanceId, contact_number=contactNumber)
            return {"messages": messages}
        except AppException as e:
            log_util.error(service_name="ChatAPI", message=f"Error getting messages: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.post("/messages")
    async def send_message(request: Request, body: SendMessageRequest):
        user_id = get_user_id(request)
        try:
            return await chat_service.send_message(
                user_id=user_id, instance_id=body.instance_id, to=body.to, message=body.message
            )
        except AppException as e:
            log_util.error(service_name="ChatAPI", message=f"Error sending message: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    @router.patch("/conversations/status")
    async def update_conversation_status(request: Request, body: ConversationStatusRequest):
        user_id = get_user_id(request)
        try:
            return await chat_service.update_status(
                user_id=user_id,
                instance_id=body.instance_id,
                contact_number=body.contact_number,
                status=body.status
            )
        except AppException as e:
            log_util.error(service_name="ChatAPI", message=f"Error updating conversation status: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
