"""
backend/kickoff/providers/llm.py

Purpose:
    Prediction backend speaking the OpenAI-compatible chat-completions
    protocol. One instance per model id; all of them share the Predictor
    interface the fallback orchestrator depends on.

Dependencies:
    - httpx
    - kickoff.providers.http_client
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from kickoff.errors import ModelSpecificError, NonRetryableError
from kickoff.providers.base import Predictor
from kickoff.providers.http_client import ResilientClient

logger = logging.getLogger("kickoff.llm")


def extract_content(data: dict[str, Any]) -> str:
    """Pull the text out of a chat-completions body.

    Reasoning models sometimes leave ``content`` empty and put the answer in
    ``reasoning`` or ``reasoning_details[].summary``.
    """
    choices = data.get("choices") or []
    message = (choices[0] or {}).get("message") if choices else None
    if not message:
        return ""
    if message.get("content"):
        return str(message["content"])
    if message.get("reasoning"):
        return str(message["reasoning"])
    for detail in message.get("reasoning_details") or []:
        if isinstance(detail, dict) and detail.get("summary"):
            return str(detail["summary"])
    return ""


class OpenAICompatiblePredictor(Predictor):
    def __init__(
        self,
        model_id: str,
        *,
        base_url: str,
        api_key: str,
        model_name: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 20.0,
        temperature: float = 0.5,
        max_tokens: int = 150,
    ):
        self.model_id = model_id
        self.model_name = model_name or model_id
        self._endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self._api_key = api_key
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = ResilientClient(
            f"llm:{model_id}", timeout=timeout, max_retries=1, transport=transport,
        )

    async def call(self, system_prompt: str, user_prompt: str) -> str:
        resp = await self._client.post(
            self._endpoint,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={
                "model": self.model_name,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "temperature": self._temperature,
                "max_tokens": self._max_tokens,
                "response_format": {"type": "json_object"},
            },
        )
        if resp.status_code in (401, 403):
            # Credentials are shared by every model; not this model's fault.
            raise NonRetryableError(f"{self.model_id}: HTTP {resp.status_code}, check LLM_API_KEY")
        if resp.status_code >= 400:
            # Unknown model or a request this model rejects.
            raise ModelSpecificError(
                f"{self.model_id}: HTTP {resp.status_code}", provider_id=self.model_id,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ModelSpecificError(f"{self.model_id}: invalid JSON body", provider_id=self.model_id) from exc

        content = extract_content(data).strip()
        if not content:
            raise ModelSpecificError(f"{self.model_id}: empty response", provider_id=self.model_id)
        return content

    async def aclose(self) -> None:
        await self._client.aclose()


def build_predictors(
    model_ids: list[str],
    *,
    base_url: str,
    api_key: str,
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[OpenAICompatiblePredictor]:
    return [
        OpenAICompatiblePredictor(
            model_id, base_url=base_url, api_key=api_key, timeout=timeout, transport=transport,
        )
        for model_id in model_ids
    ]
