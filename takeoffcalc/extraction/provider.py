"""Extraction provider and rasterizer contracts, plus the OpenAI provider."""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from openai import AsyncOpenAI, OpenAIError

from takeoffcalc.errors import StageError

logger = logging.getLogger(__name__)


@dataclass
class RenderedPage:
    """One rasterized page. A page that failed to render has ``error`` set."""

    index: int
    image: bytes | None = None
    width_px: int | None = None
    height_px: int | None = None
    text: str | None = None
    error: str | None = None


@dataclass
class ExtractionRequest:
    """One provider call: a page image and/or text plus a named JSON schema."""

    stage: str
    schema_name: str
    schema: dict[str, Any]
    instructions: str
    model: str | None = None
    image: bytes | None = None
    text: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ExtractionProvider(Protocol):
    async def extract(self, request: ExtractionRequest) -> dict[str, Any]:
        """Return JSON conforming to ``request.schema`` or raise."""
        ...


@runtime_checkable
class Rasterizer(Protocol):
    async def rasterize(self, document: bytes, dpi: int, max_pages: int) -> list[RenderedPage]:
        """Render pages in order; a failed page is returned with ``error`` set."""
        ...


SYSTEM_PROMPT = """You are an expert construction takeoff analyst reading architectural and MEP drawing sheets.
Use ONLY what is visible on the provided page image and text. Read dimension strings exactly as printed.
When a value is not shown, return null rather than estimating. Return ONLY JSON, no prose."""


class OpenAIExtractionProvider:
    """Vision extraction through the OpenAI chat completions API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.1,
        client: AsyncOpenAI | None = None,
    ):
        if not api_key and client is None:
            raise ValueError("OPENAI_API_KEY is required for the extraction provider")
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.temperature = temperature

    def build_messages(self, request: ExtractionRequest) -> list[dict[str, Any]]:
        user_text = (
            f"{request.instructions}\n\n"
            f"Respond with a JSON object matching the schema named {request.schema_name!r}:\n"
            f"{json.dumps(request.schema)}"
        )
        if request.context:
            user_text += f"\n\nCONTEXT:\n{json.dumps(request.context, default=str)}"
        if request.text:
            user_text += f"\n\nSHEET TEXT:\n{request.text}"

        content: list[dict[str, Any]] = [{"type": "text", "text": user_text}]
        if request.image:
            encoded = base64.b64encode(request.image).decode("ascii")
            content.append(
                {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}}
            )
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]

    async def extract(self, request: ExtractionRequest) -> dict[str, Any]:
        try:
            response = await self.client.chat.completions.create(
                model=request.model or self.model,
                messages=self.build_messages(request),
                response_format={"type": "json_object"},
                temperature=self.temperature,
            )
        except OpenAIError as e:
            raise StageError(request.stage, f"Provider request failed: {e}") from e

        result = response.choices[0].message.content if response.choices else None
        if not result:
            raise StageError(request.stage, "Empty response from provider")
        try:
            payload = json.loads(result)
        except json.JSONDecodeError as e:
            raise StageError(request.stage, f"Provider returned invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise StageError(request.stage, "Provider response is not a JSON object")
        return payload
