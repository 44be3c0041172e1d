from fastapi import APIRouter, Request
from fastapi.exceptions import HTTPException

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.request_utils import get_user_id

# Services
from autozap.services.ai_service import AIService

# Models
from autozap.models.response.ai_metrics_response import AIMetricsSummary

# Exceptions
from autozap.exceptions.app_exception import AppException


def create_ai_metrics_api(
    log_util: LogUtil,
    ai_service: AIService
) -> APIRouter:
    router = APIRouter(
        prefix="/api/ai-metrics",
        tags=["ai-metrics"],
    )

    @router.get("", response_model=AIMetricsSummary)
    async def get_ai_metrics(request: Request):
        user_id = get_user_id(request)
        try:
            return await ai_service.get_metrics_summary(user_id=user_id)
        except AppException as e:
            log_util.error(service_name="AIMetricsAPI", message=f"Error getting AI metrics: {e}")
            raise HTTPException(status_code=e.status_code, detail=e.message)

    return router
