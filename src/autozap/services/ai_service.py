"""
AI Service
Chat completions against the OpenAI-compatible API, with per-call usage metrics
and a response cache keyed by the normalized conversation.
"""
import hashlib
import json
import re
import time
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List
import httpx

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.environment_utils import EnvironmentUtils
from autozap.utils.template_utils import replace_variables

# Database
from autozap.database.app_db import AppDB

# Exceptions
from autozap.exceptions.app_exception import ExternalServiceException

# Models
from autozap.models.ai_metric_data import AIMetricData
from autozap.models.response.ai_metrics_response import AIMetricsSummary

DEFAULT_SYSTEM_PROMPT = "Você é um assistente virtual amigável e prestativo. Responda de forma clara, concisa e útil."
EMPTY_COMPLETION_REPLY = "Desculpe, não consegui gerar uma resposta."

# USD per token
COST_PER_TOKEN = {
    "gpt-3.5-turbo": {"prompt": 0.0005 / 1000, "completion": 0.0015 / 1000},
    "gpt-4": {"prompt": 0.03 / 1000, "completion": 0.06 / 1000},
    "gpt-4-turbo": {"prompt": 0.01 / 1000, "completion": 0.03 / 1000},
    "gpt-4o-mini": {"prompt": 0.00015 / 1000, "completion": 0.0006 / 1000},
    "default": {"prompt": 0.0005 / 1000, "completion": 0.0015 / 1000},
}


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    costs = COST_PER_TOKEN.get(model, COST_PER_TOKEN["default"])
    return prompt_tokens * costs["prompt"] + completion_tokens * costs["completion"]


def build_cache_key(
    user_message: str,
    system_prompt: Optional[str] = None,
    history: Optional[List[Dict[str, str]]] = None,
    variables: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
    model: Optional[str] = None
) -> str:
    """
    Hash of everything that shapes a reply. The message is lowercased and its
    whitespace collapsed so trivially different spellings share an entry.
    """
    normalized = re.sub(r"\s+", " ", (user_message or "").lower().strip())
    payload = {
        "message": normalized,
        "system_prompt": system_prompt or "",
        "history": history or [],
        "variables": variables or {},
        "user_id": user_id,
        "model": model,
    }
    return hashlib.md5(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()


class AIService:
    """Service for generating replies with the chat completions API."""

    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        app_db: AppDB,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.log_util = log_util
        self.app_db = app_db
        self.api_key = environment_utils.get_env_variable("OPENAI_API_KEY")
        self.base_url = str(environment_utils.get_env_variable("OPENAI_BASE_URL")).rstrip("/")
        self.model = environment_utils.get_env_variable("OPENAI_CHAT_MODEL")
        self.cache_ttl_seconds = int(environment_utils.get_env_variable("AI_CACHE_TTL_SECONDS"))
        self.transport = transport

    def build_messages(
        self,
        user_message: str,
        system_prompt: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
        variables: Optional[Dict[str, Any]] = None
    ) -> List[Dict[str, str]]:
        variables = variables or {}
        messages = [{
            "role": "system",
            "content": replace_variables(system_prompt, variables) if system_prompt else DEFAULT_SYSTEM_PROMPT
        }]
        for entry in history or []:
            messages.append({"role": entry["role"], "content": replace_variables(entry["content"], variables)})
        messages.append({"role": "user", "content": replace_variables(user_message, variables)})
        return messages

    async def generate_response(
        self,
        user_message: str,
        system_prompt: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
        variables: Optional[Dict[str, Any]] = None,
        temperature: float = 0.7,
        max_tokens: int = 500,
        user_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        contact_number: Optional[str] = None,
        use_cache: bool = True
    ) -> str:
        """
        Generate a reply for a contact message.

        Identical conversations of a tenant are answered from the cache for
        AI_CACHE_TTL_SECONDS; a cached answer is recorded as a metric with no tokens.

        Args:
            user_message: Message to answer
            system_prompt: Instructions for the assistant, the default prompt is used when empty
            history: Earlier turns as [{"role": "user" | "assistant", "content": ...}], oldest first
            variables: Values for {{name}} placeholders, applied to every message
            use_cache: Read and fill the response cache

        Returns:
            The assistant reply

        Raises:
            ExternalServiceException: when no API key is configured or the API call fails
        """
        if not self.api_key:
            raise ExternalServiceException(service="OpenAI", message="OPENAI_API_KEY is not configured", status_code=500)

        started = time.monotonic()
        cache_key = None
        if use_cache and self.cache_ttl_seconds > 0:
            cache_key = build_cache_key(user_message, system_prompt, history, variables, user_id, self.model)
            cached_response = await self._get_cached_response(cache_key)
            if cached_response is not None:
                self.log_util.debug(service_name="AIService", message=f"Reply served from cache ({cache_key})")
                await self._record_metric(user_id, instance_id, contact_number, {}, started, success=True, cached=True)
                return cached_response

        messages = self.build_messages(user_message, system_prompt, history, variables)
        request_body = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens
        }

        self.log_util.debug(
            service_name="AIService",
            message=f"Calling chat completions with {len(messages)} message(s), model={self.model}"
        )

        try:
            async with httpx.AsyncClient(timeout=60.0, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=request_body,
                    headers={
                        "Content-Type": "application/json",
                        "Authorization": f"Bearer {self.api_key}"
                    }
                )
            if response.status_code != 200:
                try:
                    detail = response.json().get("error", {}).get("message", "")
                except ValueError:
                    detail = response.text
                raise ExternalServiceException(service="OpenAI", message=f"{response.status_code} {detail}".strip())
            data = response.json()
        except ExternalServiceException:
            await self._record_metric(user_id, instance_id, contact_number, {}, started, success=False)
            raise
        except httpx.HTTPError as e:
            self.log_util.error(service_name="AIService", message=f"Error calling OpenAI: {str(e)}")
            await self._record_metric(user_id, instance_id, contact_number, {}, started, success=False)
            raise ExternalServiceException(service="OpenAI", message=str(e))

        choices = data.get("choices") or []
        content = (choices[0].get("message") or {}).get("content") if choices else None
        await self._record_metric(user_id, instance_id, contact_number, data.get("usage") or {}, started, success=True)
        if not content:
            return EMPTY_COMPLETION_REPLY
        if cache_key is not None:
            await self._set_cached_response(cache_key, content)
        return content

    async def _get_cached_response(self, cache_key: str) -> Optional[str]:
        try:
            return await self.app_db.get_cached_ai_response(cache_key)
        except Exception as e:
            # A cache failure falls back to the API
            self.log_util.warning(service_name="AIService", message=f"Error reading AI cache: {str(e)}")
            return None

    async def _set_cached_response(self, cache_key: str, content: str) -> None:
        expires_at = datetime.utcnow() + timedelta(seconds=self.cache_ttl_seconds)
        try:
            await self.app_db.set_cached_ai_response(cache_key, content, expires_at)
        except Exception as e:
            self.log_util.warning(service_name="AIService", message=f"Error writing AI cache: {str(e)}")

    async def _record_metric(
        self,
        user_id: Optional[str],
        instance_id: Optional[str],
        contact_number: Optional[str],
        usage: Dict[str, Any],
        started: float,
        success: bool,
        cached: bool = False
    ) -> None:
        prompt_tokens = int(usage.get("prompt_tokens") or 0)
        completion_tokens = int(usage.get("completion_tokens") or 0)
        metric = AIMetricData(
            user_id=user_id,
            instance_id=instance_id,
            contact_number=contact_number,
            model=self.model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=int(usage.get("total_tokens") or prompt_tokens + completion_tokens),
            cost=calculate_cost(self.model, prompt_tokens, completion_tokens),
            duration_ms=int((time.monotonic() - started) * 1000),
            success=success,
            cached=cached
        )
        try:
            await self.app_db.save_ai_metric(metric)
        except Exception as e:
            # Metrics never block a reply
            self.log_util.warning(service_name="AIService", message=f"Error saving AI metric: {str(e)}")

    async def record_usage(self, metric: AIMetricData) -> None:
        try:
            await self.app_db.save_ai_metric(metric)
        except Exception as e:
            self.log_util.warning(service_name="AIService", message=f"Error saving AI metric: {str(e)}")

    async def get_metrics_summary(self, user_id: str) -> AIMetricsSummary:
        summary = await self.app_db.get_ai_metrics_summary(user_id)
        return AIMetricsSummary(**{key: value for key, value in summary.items() if value is not None})
