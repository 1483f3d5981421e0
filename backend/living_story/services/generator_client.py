"""内容生成器 HTTP 客户端（Gemini 风格 generateContent 接口）."""
from __future__ import annotations

from typing import Any, Iterable, Mapping

import httpx

from living_story.config import (
    GENERATOR_API_KEY,
    GENERATOR_BASE_URL,
    GENERATOR_MODEL,
    GENERATOR_TIMEOUT_SECONDS,
)


class GeneratorClient:
    """轻量封装生成器 API，默认使用 env 配置。"""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = GENERATOR_API_KEY if api_key is None else api_key
        self.base_url = base_url or GENERATOR_BASE_URL
        self.model = model or GENERATOR_MODEL
        resolved_timeout = GENERATOR_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self.timeout_seconds = self._validate_timeout(resolved_timeout)
        self._transport = transport

    @staticmethod
    def _strip_thoughts(payload: dict[str, Any]) -> dict[str, Any]:
        """去除 thought 标记的内容块，避免上层收到思考过程."""
        candidates = payload.get("candidates", [])
        for candidate in candidates:
            content = candidate.get("content")
            if not content:
                continue
            parts = content.get("parts", [])
            content["parts"] = [part for part in parts if not part.get("thought")]
        return payload

    @staticmethod
    def _validate_timeout(timeout_seconds: float) -> float:
        if timeout_seconds <= 0:
            raise ValueError("timeout must be > 0")
        return timeout_seconds

    def _ensure_key(self) -> str:
        if not self.api_key:
            raise ValueError("GENERATOR_API_KEY is required")
        return self.api_key

    @staticmethod
    def _to_parts(text: str) -> list[Mapping[str, str]]:
        return [{"text": text}]

    def _build_payload(
        self,
        *,
        messages: Iterable[Mapping[str, str]],
        system_instruction: str | None,
        generation_config: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        contents = [
            {"role": msg["role"], "parts": self._to_parts(msg["text"])}
            for msg in messages
        ]
        payload: dict[str, Any] = {"contents": contents}
        if system_instruction:
            payload["systemInstruction"] = {"parts": self._to_parts(system_instruction)}
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    async def generate_content(
        self,
        *,
        messages: Iterable[Mapping[str, str]],
        system_instruction: str | None = None,
        generation_config: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """调用 generateContent 接口并返回 JSON 响应."""
        api_key = self._ensure_key()
        payload = self._build_payload(
            messages=messages,
            system_instruction=system_instruction,
            generation_config=generation_config,
        )
        request_timeout = self.timeout_seconds if timeout is None else self._validate_timeout(timeout)

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=request_timeout,
            transport=self._transport,
        ) as client:
            response = await client.post(
                f"/v1beta/models/{self.model}:generateContent",
                params={"key": api_key},
                json=payload,
            )
            response.raise_for_status()
            return self._strip_thoughts(response.json())
