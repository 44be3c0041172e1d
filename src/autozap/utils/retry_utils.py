"""
Retry helpers for calls to external APIs.

Only the transcription route retries: it wraps the speech-to-text call in
retry_with_backoff and turns whatever finally escapes into an HTTP status with
classify_transcription_error.
"""
import asyncio
import random
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

T = TypeVar("T")

RETRYABLE_ERROR_SIGNATURES: List[str] = [
    "ECONNRESET",
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "APIConnectionError",
    "APITimeoutError",
    "FetchError",
    "NetworkError",
    "ClientConnectionError",
    "socket hang up",
]

# (status, message, substrings) checked in order, first match wins
TRANSCRIPTION_ERROR_TABLE: List[Tuple[int, str, List[str]]] = [
    (503, "Erro de conexão com o serviço de transcrição. Verifique sua conexão e tente novamente.",
     ["econnreset", "connection error", "fetch error", "network error"]),
    (408, "Timeout ao processar o áudio. Tente com um arquivo menor ou mais curto.",
     ["timeout", "timed out"]),
    (401, "API key inválida ou expirada.",
     ["api key", "unauthorized"]),
    (429, "Limite de uso excedido. Verifique sua assinatura OpenAI.",
     ["insufficient_quota", "rate limit"]),
    (402, "Problema de pagamento. Adicione um método de pagamento na sua conta OpenAI.",
     ["payment", "billing", "credit"]),
    (429, "Limite de uso excedido. Verifique sua assinatura OpenAI.",
     ["quota", "limit"]),
    (413, "Arquivo muito grande. Tamanho máximo é 25MB.",
     ["file too large", "size"]),
    (403, "Acesso negado ao serviço de transcrição.",
     ["forbidden", "permission"]),
    (400, "Formato de áudio inválido ou não suportado.",
     ["invalid file format", "unsupported", "could not be decoded"]),
]

DEFAULT_TRANSCRIPTION_ERROR = (500, "Falha ao processar áudio. Tente novamente em alguns instantes.")


def _error_signatures(error: BaseException) -> List[str]:
    signatures = [str(error).lower()]
    code = getattr(error, "code", None)
    if code is not None:
        signatures.append(str(code).lower())
    signatures.extend(klass.__name__.lower() for klass in type(error).__mro__)
    return signatures


def is_retryable_error(error: Optional[BaseException]) -> bool:
    """
    True when the error looks like a connection or timeout failure.
    Matches the error code, the exception class hierarchy and the message.
    """
    if error is None:
        return False
    signatures = _error_signatures(error)
    for retryable in RETRYABLE_ERROR_SIGNATURES:
        needle = retryable.lower()
        if any(needle in signature for signature in signatures):
            return True
    return False


def backoff_delay(attempt: int, base_delay: float, jitter: Optional[float] = None) -> float:
    """
    base_delay * 2**attempt plus a jitter in [0, base_delay), so delays
    strictly increase from one attempt to the next.
    """
    if jitter is None:
        jitter = random.random()
    return base_delay * (2 ** attempt) + jitter * base_delay


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    on_retry: Optional[Callable[[int, float, BaseException], Any]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Call fn up to max_retries + 1 times.

    Non-retryable errors and the error of the last attempt are raised as is.
    """
    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            if attempt == max_retries or not is_retryable_error(e):
                raise
            delay = backoff_delay(attempt, base_delay)
            if on_retry is not None:
                on_retry(attempt + 1, delay, e)
            await sleep(delay)
    raise RuntimeError("retry_with_backoff called with a negative max_retries")


def classify_transcription_error(error: BaseException) -> Tuple[int, str]:
    """
    Map an error raised while transcribing to (http_status, user message).
    """
    message = str(error).lower()
    for status_code, user_message, needles in TRANSCRIPTION_ERROR_TABLE:
        if any(needle in message for needle in needles):
            return status_code, user_message
    return DEFAULT_TRANSCRIPTION_ERROR
