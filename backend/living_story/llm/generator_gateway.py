"""生成器统一网关：模型输出 -> JSON -> Pydantic 校验（快速失败）。"""

from __future__ import annotations

import json
from typing import Any, Mapping, TypeVar

from pydantic import TypeAdapter, ValidationError

from living_story.llm import prompts
from living_story.models import ImpactRequest, ProposedEdit, ProposedEditList
from living_story.services.generator_client import GeneratorClient

T = TypeVar("T")


def _extract_text(payload: Mapping[str, Any]) -> str:
    candidates = payload["candidates"]
    first = candidates[0]
    parts = first["content"]["parts"]
    return "".join(part["text"] for part in parts)


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.splitlines()
    if len(lines) < 3:
        return stripped
    if not lines[-1].strip().startswith("```"):
        return stripped
    return "\n".join(lines[1:-1]).strip()


def _parse_json_payload(text: str) -> Any:
    candidate = _strip_code_fence(text)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON model output: {exc.msg}") from exc


async def _generate_structured_output(
    *,
    client: GeneratorClient,
    system_prompt: str,
    user_text: str,
    output_type: Any,
    generation_config: Mapping[str, Any] | None = None,
) -> T:
    response = await client.generate_content(
        messages=[{"role": "user", "text": user_text}],
        system_instruction=system_prompt,
        generation_config=generation_config,
    )
    try:
        text = _extract_text(response).strip()
    except (KeyError, IndexError, TypeError) as exc:
        raise ValueError("generator response has no text candidate") from exc
    parsed = _parse_json_payload(text)
    try:
        return TypeAdapter(output_type).validate_python(parsed)
    except ValidationError as exc:
        raise ValueError(f"invalid structured output schema: {exc}") from exc


class GeneratorGateway:
    """对业务层暴露的生成器单一入口。"""

    def __init__(self, client: GeneratorClient) -> None:
        self._client = client

    async def propose_edits(self, request: ImpactRequest) -> list[ProposedEdit]:
        system_prompt = prompts.IMPACT_ANALYSIS_SYSTEM_PROMPT
        hint = prompts.UPDATE_STRATEGY_HINTS.get(request.update_type)
        if hint:
            system_prompt = f"{system_prompt}\n{hint}"
        user_text = json.dumps(request.model_dump(mode="json"), ensure_ascii=False)
        result: ProposedEditList = await _generate_structured_output(
            client=self._client,
            system_prompt=system_prompt,
            user_text=user_text,
            output_type=ProposedEditList,
            generation_config={"responseMimeType": "application/json"},
        )
        return result.edits
