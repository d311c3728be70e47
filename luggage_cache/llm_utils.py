# luggage_cache/llm_utils.py
from __future__ import annotations

import base64
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Optional, Type, TypeVar

from google import genai
from google.genai import types
from openai import OpenAI
from pydantic import BaseModel

from luggage_cache.config import ModelConfig
from luggage_cache.errors import LLMConfigurationError, LLMRequestError

T = TypeVar("T", bound=BaseModel)

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 10


def backoff_delay(attempt: int) -> float:
    """Exponential backoff between attempts, capped at ``MAX_BACKOFF_SECONDS``."""
    return float(min(2 ** attempt, MAX_BACKOFF_SECONDS))


@dataclass(frozen=True)
class ImageInput:
    data: bytes
    mime_type: str = "image/jpeg"

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


class LLMClient:
    """Thin provider switch over Gemini and OpenAI-compatible chat endpoints.

    Credentials are read from ``GOOGLE_API_KEY`` / ``OPENAI_API_KEY`` the first
    time a provider client is needed. Every failed attempt is retried with
    exponential backoff; the last failure is raised as :class:`LLMRequestError`
    so the request coordinator can report it to every waiting caller.
    """

    def __init__(
        self,
        model_config: Optional[ModelConfig] = None,
        gemini_client: Any = None,
        openai_client: Any = None,
    ) -> None:
        self.model_config = model_config or ModelConfig()
        self._gemini_client = gemini_client
        self._openai_client = openai_client

    @property
    def provider(self) -> str:
        return self.model_config.provider

    def _get_gemini_client(self) -> Any:
        if self._gemini_client is None:
            api_key = os.getenv("GOOGLE_API_KEY")
            if not api_key:
                raise LLMConfigurationError("GOOGLE_API_KEY is not set.")
            self._gemini_client = genai.Client(api_key=api_key)
            logger.info("Gemini client configured for model %s.", self.model_config.model_name)
        return self._gemini_client

    def _get_openai_client(self) -> Any:
        if self._openai_client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise LLMConfigurationError("OPENAI_API_KEY is not set.")
            base_url = self.model_config.openai_base_url
            if base_url:
                self._openai_client = OpenAI(api_key=api_key, base_url=base_url)
            else:
                self._openai_client = OpenAI(api_key=api_key)
            logger.info("OpenAI client configured for model %s.", self.model_config.model_name)
        return self._openai_client

    # --- Provider calls ---

    def _call_gemini(
        self,
        prompt: str,
        system_message: str,
        temperature: float,
        response_schema: Optional[Type[T]],
        image: Optional[ImageInput],
    ) -> Any:
        client = self._get_gemini_client()
        generation_config = types.GenerateContentConfig(
            temperature=temperature,
            system_instruction=system_message,
            response_mime_type=self.model_config.gemini.response_mime_type if response_schema else None,
            response_schema=response_schema,
        )
        contents: Any = prompt
        if image is not None:
            contents = [types.Part.from_bytes(data=image.data, mime_type=image.mime_type), prompt]
        response = client.models.generate_content(
            model=f"models/{self.model_config.gemini.model_name}",
            contents=contents,
            config=generation_config,
        )
        if response_schema is None:
            return response.text
        parsed = response.parsed
        if isinstance(parsed, response_schema):
            return parsed
        if response.text:
            return response_schema.model_validate_json(response.text)
        raise TypeError(f"Structured response is not of type {response_schema.__name__}: {type(parsed)}")

    def _call_openai(
        self,
        prompt: str,
        system_message: str,
        temperature: float,
        response_schema: Optional[Type[T]],
        image: Optional[ImageInput],
    ) -> Any:
        client = self._get_openai_client()
        user_content: Any = prompt
        if image is not None:
            user_content = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": image.data_url()}},
            ]
        kwargs = {}
        if response_schema is not None:
            kwargs["response_format"] = {"type": self.model_config.openai.response_format}
        response = client.chat.completions.create(
            model=self.model_config.openai.model_name,
            messages=[
                {"role": "system", "content": system_message},
                {"role": "user", "content": user_content},
            ],
            temperature=temperature,
            **kwargs,
        )
        content = response.choices[0].message.content or ""
        if response_schema is None:
            return content
        return response_schema.model_validate_json(content)

    def _query(
        self,
        prompt: str,
        system_message: str,
        response_schema: Optional[Type[T]],
        temperature: Optional[float],
        max_retries: Optional[int],
        image: Optional[ImageInput] = None,
    ) -> Any:
        temperature = self.model_config.temperature if temperature is None else temperature
        attempts = max(1, max_retries if max_retries is not None else self.model_config.max_retries)
        if self.provider not in ("gemini", "openai"):
            raise LLMConfigurationError(f"Unknown provider: {self.provider}. Expected 'gemini' or 'openai'.")
        call = self._call_openai if self.provider == "openai" else self._call_gemini

        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                return call(prompt, system_message, temperature, response_schema, image)
            except LLMConfigurationError:
                raise
            except Exception as exc:
                last_error = exc
                logger.warning("LLM call failed (attempt %d/%d): %s", attempt + 1, attempts, exc)
                if attempt < attempts - 1:
                    time.sleep(backoff_delay(attempt))
        raise LLMRequestError(f"LLM request failed after {attempts} attempts: {last_error}") from last_error

    def query_text(
        self,
        prompt: str,
        system_message: str,
        temperature: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> str:
        """Return the free-form text answer for ``prompt``."""
        return self._query(prompt, system_message, None, temperature, max_retries)

    def query_structured(
        self,
        prompt: str,
        system_message: str,
        response_schema: Type[T],
        temperature: Optional[float] = None,
        max_retries: Optional[int] = None,
        image: Optional[ImageInput] = None,
    ) -> T:
        """Return ``prompt``'s answer validated against ``response_schema``.

        ``image`` is sent alongside the prompt for photo recognition.
        """
        return self._query(prompt, system_message, response_schema, temperature, max_retries, image)
