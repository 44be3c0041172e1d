from fastapi import APIRouter, Request, UploadFile, File
from fastapi.responses import JSONResponse
from typing import Optional

# Utils
from autozap.utils.log_utils import LogUtil

# Services
from autozap.services.transcription_service import (
    TranscriptionService,
    NOT_CONFIGURED_MESSAGE,
    MISSING_AUDIO_MESSAGE,
)

# Exceptions
from autozap.exceptions.app_exception import TranscriptionException

# Models
from autozap.models.response.transcription_response import TranscriptionResponse


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_transcription_api(
    log_util: LogUtil,
    transcription_service: TranscriptionService
) -> APIRouter:
    """
    Create API router for audio transcription. Errors use the {"error": message} envelope.
    """
    router = APIRouter(
        prefix="/api/audio",
        tags=["audio"],
    )

    @router.post("/transcribe", response_model=TranscriptionResponse)
    async def transcribe_audio(request: Request, audio: Optional[UploadFile] = File(None)):
        if not transcription_service.is_configured:
            return _error(500, NOT_CONFIGURED_MESSAGE)

        account_error = await transcription_service.check_account()
        if account_error is not None:
            return _error(*account_error)

        user_id = request.headers.get("x-user-id")
        if not user_id:
            return _error(401, "Unauthorized")

        if audio is None:
            return _error(400, MISSING_AUDIO_MESSAGE)

        try:
            content = await audio.read()
            transcription_service.validate_audio(audio.content_type, len(content))
            return await transcription_service.transcribe(content, audio.content_type, user_id=user_id)
        except TranscriptionException as e:
            log_util.error(service_name="TranscriptionAPI", message=f"Transcription error ({e.status_code}): {e.message}")
            return _error(e.status_code, e.message)
        except Exception as e:
            log_util.error(service_name="TranscriptionAPI", message=f"Unexpected transcription error: {e}")
            return _error(500, "Falha ao processar áudio. Tente novamente em alguns instantes.")
        finally:
            await audio.close()

    return router
