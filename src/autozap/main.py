import uvicorn
from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.environment_utils import EnvironmentUtils
from autozap.utils.rate_limit_utils import RateLimiter, rate_limit_dependency, API_RATE_LIMIT_POINTS, API_RATE_LIMIT_SECONDS

# Database
from autozap.database.app_db import AppDB

# Services
from autozap.services.workflow_graph_service import WorkflowGraphService
from autozap.services.workflow_service import WorkflowService
from autozap.services.conversation_status_service import ConversationStatusService
from autozap.services.whatsapp_cloud_service import WhatsAppCloudService
from autozap.services.ai_service import AIService
from autozap.services.workflow_executor_service import WorkflowExecutorService
from autozap.services.wait_scheduler_service import WaitSchedulerService
from autozap.services.message_ingestion_service import MessageIngestionService
from autozap.services.chat_service import ChatService
from autozap.services.transcription_service import TranscriptionService
from autozap.services.record_service import RecordService, RECORD_RESOURCES

# APIs
from autozap.apis.workflow_api import create_workflow_api
from autozap.apis.whatsapp_webhook_api import create_whatsapp_webhook_api
from autozap.apis.chat_api import create_chat_api
from autozap.apis.transcription_api import create_transcription_api
from autozap.apis.ai_metrics_api import create_ai_metrics_api
from autozap.apis.record_api import create_record_api

# Exceptions
from autozap.exceptions.app_exception import AppException, ValidationException

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
app_db = AppDB(log_util=log_util, environment_utils=environment_utils)

# Services
workflow_graph_service = WorkflowGraphService(log_util=log_util)

workflow_service = WorkflowService(
    log_util=log_util,
    app_db=app_db,
    workflow_graph_service=workflow_graph_service
)

conversation_status_service = ConversationStatusService(
    log_util=log_util,
    app_db=app_db
)

whatsapp_cloud_service = WhatsAppCloudService(
    log_util=log_util,
    environment_utils=environment_utils,
    app_db=app_db
)

ai_service = AIService(
    log_util=log_util,
    environment_utils=environment_utils,
    app_db=app_db
)

workflow_executor_service = WorkflowExecutorService(
    log_util=log_util,
    environment_utils=environment_utils,
    app_db=app_db,
    whatsapp_cloud_service=whatsapp_cloud_service,
    ai_service=ai_service,
    conversation_status_service=conversation_status_service,
    workflow_graph_service=workflow_graph_service
)

# Resumes executions paused on wait nodes
wait_scheduler_service = WaitSchedulerService(
    log_util=log_util,
    app_db=app_db,
    workflow_executor_service=workflow_executor_service,
    check_interval_seconds=environment_utils.get_env_variable("WAIT_CHECK_INTERVAL_SECONDS")
)

message_ingestion_service = MessageIngestionService(
    log_util=log_util,
    app_db=app_db,
    conversation_status_service=conversation_status_service,
    workflow_executor_service=workflow_executor_service
)

chat_service = ChatService(
    log_util=log_util,
    app_db=app_db,
    conversation_status_service=conversation_status_service,
    whatsapp_cloud_service=whatsapp_cloud_service
)

transcription_service = TranscriptionService(
    log_util=log_util,
    environment_utils=environment_utils,
    ai_service=ai_service
)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log_util.info(service_name="AutoZapService", message="Application startup complete")

    await wait_scheduler_service.start()

    yield

    # Shutdown
    await wait_scheduler_service.stop()

    app_db.close()
    log_util.info(service_name="AutoZapService", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="AutoZap service",
    description="WhatsApp automation workflows, chat inbox and AI assistant",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Workflow management APIs
app.include_router(create_workflow_api(
    log_util=log_util,
    workflow_service=workflow_service
))

# WhatsApp Cloud API webhook (verification and inbound messages)
app.include_router(create_whatsapp_webhook_api(
    log_util=log_util,
    app_db=app_db,
    message_ingestion_service=message_ingestion_service
))

# Chat inbox APIs
app.include_router(create_chat_api(
    log_util=log_util,
    chat_service=chat_service
))

# Audio transcription API
app.include_router(create_transcription_api(
    log_util=log_util,
    transcription_service=transcription_service
))

# AI usage APIs
app.include_router(create_ai_metrics_api(
    log_util=log_util,
    ai_service=ai_service
))

# CRUD record APIs
api_rate_limiter = RateLimiter(name="api", points=API_RATE_LIMIT_POINTS, duration_seconds=API_RATE_LIMIT_SECONDS)
RATE_LIMITED_COLLECTIONS = ("services", "pix_keys")

RECORD_ROUTES = (
    ("/api/clients", "clients", "clients"),
    ("/api/appointments", "appointments", "appointments"),
    ("/api/services", "services", "services"),
    ("/api/catalogs", "catalogs", "catalogs"),
    ("/api/orders", "orders", "orders"),
    ("/api/pix-keys", "pix_keys", "pix-keys"),
    ("/api/working-hours", "working_hours", "working-hours"),
    ("/api/whatsapp/instances", "instances", "instances"),
)
for prefix, collection, tag in RECORD_ROUTES:
    record_service = RecordService(
        log_util=log_util,
        app_db=app_db,
        resource=RECORD_RESOURCES[collection]
    )
    app.include_router(create_record_api(
        log_util=log_util,
        record_service=record_service,
        prefix=prefix,
        tag=tag,
        dependencies=[Depends(rate_limit_dependency(api_rate_limiter, log_util))] if collection in RATE_LIMITED_COLLECTIONS else None
    ))

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "autozap_service"}

# Global exception handler for service exceptions that escaped a router
@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    log_util.error(service_name="AutoZapService", message=f"{type(exc).__name__}: {exc.message}")
    content = {
        "detail": exc.message,
        "error": exc.message,
        "status_code": exc.status_code
    }
    if isinstance(exc, ValidationException) and exc.fields:
        content["fields"] = exc.fields
    return JSONResponse(status_code=exc.status_code, content=content)

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="AutoZapService", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": str(exc.detail),
            "status_code": exc.status_code
        },
        headers={**(exc.headers or {}), "Content-Type": "application/json"}
    )

# Request body and query validation errors
@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    log_util.warning(service_name="AutoZapService", message=f"Request validation failed on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={
            "detail": jsonable_encoder(exc.errors()),
            "error": "Invalid request",
            "status_code": 422
        }
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="AutoZapService", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        },
        headers={"Content-Type": "application/json"}
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
