"""Language model collaborator: plain and structured (JSON) text generation."""

from __future__ import annotations

import logging
from typing import Protocol, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from .config import LLM_MODEL
from .errors import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class LanguageModel(Protocol):
    async def generate(self, prompt: str) -> str: ...

    async def generate_structured(self, prompt: str, schema: type[T]) -> T: ...


class OpenAILanguageModel:
    """Chat-completions backed model. Errors surface as UpstreamError, no retries."""

    def __init__(self, model: str = LLM_MODEL, client: AsyncOpenAI | None = None):
        self.model = model
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Created lazily so commands that never call the model don't need an API key
        if self._client is None:
            try:
                self._client = AsyncOpenAI()
            except openai.OpenAIError as e:
                raise UpstreamError(f"Language model unavailable: {e}") from e
        return self._client

    async def generate(self, prompt: str) -> str:
        return await self._complete(prompt)

    async def generate_structured(self, prompt: str, schema: type[T]) -> T:
        instruction = (
            f"{prompt}\n\n"
            "Respond with a single JSON object matching this JSON schema:\n"
            f"{schema.model_json_schema()}"
        )
        raw = await self._complete(instruction, json_mode=True)
        try:
            return schema.model_validate_json(raw)
        except ValidationError as e:
            raise UpstreamError(f"Model returned invalid {schema.__name__}: {e}") from e

    async def _complete(self, prompt: str, json_mode: bool = False) -> str:
        kwargs = {"response_format": {"type": "json_object"}} if json_mode else {}
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                **kwargs,
            )
        except openai.OpenAIError as e:
            logger.error("Language model call failed: %s", e)
            raise UpstreamError(f"LLM error: {e}") from e

        text = response.choices[0].message.content if response.choices else None
        if not text:
            raise UpstreamError("Language model returned an empty response")
        return text
