from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx

from homeops.logging import get_logger, sanitize_error_message
from homeops.service.errors import BadUpstream

logger = get_logger(__name__)

PROPERTY_DETAILS_PROMPT = (
    "You are a home-records assistant. Given a property's address, return a JSON "
    "object with the keys yearBuilt, squareFeet, bedrooms, bathrooms, lotSize, "
    "propertyType and notes. Use null for anything you cannot infer."
)


@dataclass
class LLMResult:
    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


class LLMClient:
    """OpenAI-compatible chat completions over httpx."""

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str,
        model: str,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def complete(
        self,
        messages: List[dict],
        *,
        model: Optional[str] = None,
        json_mode: bool = False,
    ) -> LLMResult:
        if not self.is_configured:
            raise BadUpstream("AI provider is not configured", status_code=503)
        chosen = model or self.model
        payload: dict[str, Any] = {"model": chosen, "messages": messages}
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                headers={"Authorization": f"Bearer {self.api_key}"},
            ) as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "llm_api_error",
                status_code=exc.response.status_code,
                model=chosen,
            )
            raise BadUpstream(f"AI provider returned {exc.response.status_code}") from exc
        except httpx.TimeoutException as exc:
            logger.error("llm_timeout", model=chosen, error=sanitize_error_message(str(exc)))
            raise BadUpstream("AI provider timed out", status_code=503) from exc
        except httpx.HTTPError as exc:
            logger.error("llm_connect_error", model=chosen, error=sanitize_error_message(str(exc)))
            raise BadUpstream("AI provider is unavailable", status_code=503) from exc
        except ValueError as exc:
            raise BadUpstream("AI provider returned an unreadable response") from exc

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise BadUpstream("AI provider returned no completion") from exc
        usage = data.get("usage") or {}
        return LLMResult(
            content=content,
            model=data.get("model") or chosen,
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
        )


def property_details_messages(details: dict) -> List[dict]:
    address = ", ".join(
        str(details[k]) for k in ("address", "city", "state", "zip") if details.get(k)
    )
    return [
        {"role": "system", "content": PROPERTY_DETAILS_PROMPT},
        {"role": "user", "content": f"Property: {address or 'unknown'}"},
    ]


def parse_json_content(content: str) -> Any:
    """Model output as JSON when it parses, else the raw text."""
    try:
        return json.loads(content)
    except (TypeError, ValueError):
        return content


__all__ = ["LLMClient", "LLMResult", "property_details_messages", "parse_json_content"]
