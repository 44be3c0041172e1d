"""
Transcription Service
Speech-to-text through the OpenAI audio API.

The SDK call is retried with backoff; when it still fails the audio is posted
directly as multipart (once, then again with a slower backoff). Whatever
escapes is classified into an HTTP status for the caller.
"""
import asyncio
from typing import Optional, Tuple, Callable, Awaitable, Any
import aiohttp
from openai import AsyncOpenAI

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.environment_utils import EnvironmentUtils
from autozap.utils.retry_utils import retry_with_backoff, classify_transcription_error

# Services
from autozap.services.ai_service import AIService

# Exceptions
from autozap.exceptions.app_exception import TranscriptionException

# Models
from autozap.models.ai_metric_data import AIMetricData
from autozap.models.response.transcription_response import TranscriptionResponse

WHISPER_MODEL = "whisper-1"
TRANSCRIPTION_LANGUAGE = "pt"
TRANSCRIPTION_PROMPT = "Transcrição de áudio em português brasileiro. Inclua pontuação e formatação adequada."
WHISPER_COST_PER_MINUTE = 0.006

MAX_AUDIO_SIZE = 25 * 1024 * 1024
ALLOWED_AUDIO_TYPES = (
    "audio/wav",
    "audio/mp3",
    "audio/mpeg",
    "audio/mp4",
    "audio/m4a",
    "audio/webm",
    "audio/ogg",
)

NOT_CONFIGURED_MESSAGE = "Serviço de transcrição não configurado."
MISSING_AUDIO_MESSAGE = "Audio file is required"
UNSUPPORTED_TYPE_MESSAGE = "Tipo de arquivo não suportado. Use WAV, MP3, MP4, M4A, WebM ou OGG."
FILE_TOO_LARGE_MESSAGE = "Arquivo muito grande. Tamanho máximo é 25MB."
NO_SPEECH_MESSAGE = "Não foi possível transcrever o áudio. Tente falar mais claramente ou verifique se há áudio no arquivo."

ACCOUNT_ERRORS = {
    401: "API key inválida ou expirada.",
    402: "Problema de pagamento. Adicione um método de pagamento na sua conta OpenAI.",
    429: "Limite de requisições excedido. Verifique sua assinatura.",
}


class TranscriptionRequestError(Exception):
    """
    Raised by the direct multipart call; the message carries the HTTP status and vendor error text
    """
    pass


class TranscriptionService:
    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        ai_service: AIService,
        openai_client: Optional[AsyncOpenAI] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.log_util = log_util
        self.ai_service = ai_service
        self.api_key = environment_utils.get_env_variable("OPENAI_API_KEY")
        self.base_url = str(environment_utils.get_env_variable("OPENAI_BASE_URL")).rstrip("/")
        self.sleep = sleep
        if openai_client is None and self.api_key:
            # Retries are driven by retry_with_backoff, not by the SDK
            openai_client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, timeout=60.0, max_retries=0)
        self.openai_client = openai_client

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def check_account(self) -> Optional[Tuple[int, str]]:
        """
        Query the models endpoint to catch key, billing and quota problems before uploading audio.

        Returns:
            (status, message) when the account cannot be used, None otherwise.
            Failures of this check (network, timeout, other statuses) are logged and ignored.
        """
        try:
            timeout = aiohttp.ClientTimeout(total=10)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(
                    f"{self.base_url}/models",
                    headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
                ) as response:
                    if response.status in ACCOUNT_ERRORS:
                        body = await response.text()
                        self.log_util.warning(
                            service_name="TranscriptionService",
                            message=f"Account check failed with {response.status}: {body[:200]}"
                        )
                        return response.status, ACCOUNT_ERRORS[response.status]
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.log_util.warning(
                service_name="TranscriptionService",
                message=f"Account check unavailable, continuing: {str(e) or type(e).__name__}"
            )
        return None

    @staticmethod
    def validate_audio(content_type: Optional[str], size: int) -> None:
        if (content_type or "").lower() not in ALLOWED_AUDIO_TYPES:
            raise TranscriptionException(UNSUPPORTED_TYPE_MESSAGE, 400)
        if size > MAX_AUDIO_SIZE:
            raise TranscriptionException(FILE_TOO_LARGE_MESSAGE, 400)

    async def _transcribe_with_sdk(self, audio: bytes, content_type: str) -> str:
        result = await self.openai_client.audio.transcriptions.create(
            file=("audio.wav", audio, content_type),
            model=WHISPER_MODEL,
            language=TRANSCRIPTION_LANGUAGE,
            response_format="json",
            temperature=0.0,
            prompt=TRANSCRIPTION_PROMPT
        )
        return result.text or ""

    async def _transcribe_direct(self, audio: bytes, content_type: str) -> str:
        form = aiohttp.FormData()
        form.add_field("file", audio, filename="audio.wav", content_type=content_type)
        form.add_field("model", WHISPER_MODEL)
        form.add_field("language", TRANSCRIPTION_LANGUAGE)
        form.add_field("response_format", "json")
        form.add_field("temperature", "0.0")
        form.add_field("prompt", TRANSCRIPTION_PROMPT)

        try:
            timeout = aiohttp.ClientTimeout(total=60)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    f"{self.base_url}/audio/transcriptions",
                    data=form,
                    headers={"Authorization": f"Bearer {self.api_key}"}
                ) as response:
                    if response.status != 200:
                        body = await response.text()
                        raise TranscriptionRequestError(f"HTTP {response.status}: {response.reason} {body[:300]}")
                    result = await response.json(content_type=None)
        except asyncio.TimeoutError:
            raise TranscriptionRequestError("Transcription request timed out (ETIMEDOUT)")

        if isinstance(result, dict):
            return result.get("text") or ""
        return str(result or "")

    def _log_retry(self, transport: str) -> Callable[[int, float, BaseException], None]:
        def _on_retry(attempt: int, delay: float, error: BaseException) -> None:
            self.log_util.warning(
                service_name="TranscriptionService",
                message=f"{transport} transcription attempt {attempt} failed ({str(error) or type(error).__name__}), retrying in {delay:.2f}s"
            )
        return _on_retry

    async def _run_transports(self, audio: bytes, content_type: str) -> str:
        try:
            return await retry_with_backoff(
                lambda: self._transcribe_with_sdk(audio, content_type),
                max_retries=2,
                base_delay=1.0,
                on_retry=self._log_retry("SDK"),
                sleep=self.sleep
            )
        except Exception as sdk_error:
            self.log_util.warning(
                service_name="TranscriptionService",
                message=f"SDK transcription failed, trying direct request: {str(sdk_error) or type(sdk_error).__name__}"
            )

        try:
            return await self._transcribe_direct(audio, content_type)
        except Exception as direct_error:
            self.log_util.warning(
                service_name="TranscriptionService",
                message=f"Direct transcription failed, retrying with backoff: {str(direct_error)}"
            )

        return await retry_with_backoff(
            lambda: self._transcribe_direct(audio, content_type),
            max_retries=2,
            base_delay=2.0,
            on_retry=self._log_retry("Direct"),
            sleep=self.sleep
        )

    async def transcribe(self, audio: bytes, content_type: str, user_id: Optional[str] = None) -> TranscriptionResponse:
        """
        Transcribe an audio file.

        Raises:
            TranscriptionException: with the HTTP status to answer (400 for unusable
            audio or empty transcripts, the classified status for vendor failures)
        """
        if not self.is_configured or self.openai_client is None:
            raise TranscriptionException(NOT_CONFIGURED_MESSAGE, 500)

        try:
            text = await self._run_transports(audio, content_type)
        except Exception as e:
            status_code, message = classify_transcription_error(e)
            self.log_util.error(
                service_name="TranscriptionService",
                message=f"Transcription failed after all attempts ({status_code}): {str(e) or type(e).__name__}"
            )
            raise TranscriptionException(message, status_code)

        text = text.strip()
        if len(text) < 2:
            raise TranscriptionException(NO_SPEECH_MESSAGE, 400)

        # Whisper is billed per minute; estimated from the transcript length
        estimated_minutes = max(1, len(text) / 1000)
        whisper_cost = estimated_minutes * WHISPER_COST_PER_MINUTE
        whisper_tokens = int(len(text) / 4 + 0.5)

        await self.ai_service.record_usage(AIMetricData(
            user_id=user_id,
            model=WHISPER_MODEL,
            completion_tokens=whisper_tokens,
            total_tokens=whisper_tokens,
            cost=whisper_cost
        ))
        self.log_util.info(
            service_name="TranscriptionService",
            message=f"Audio transcribed for user {user_id}: {len(text)} chars, cost {whisper_cost:.4f}"
        )
        return TranscriptionResponse(text=text, whisperCost=whisper_cost, whisperTokens=whisper_tokens)
