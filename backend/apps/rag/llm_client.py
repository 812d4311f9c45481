"""
LLM Client Abstraction Layer.

Provides a unified streaming interface over:
- Gemini API (Google's cloud API, default)
- Ollama (local inference)
- OpenAI-compatible APIs

stream_chat() yields text deltas as they arrive. Closing the generator
early closes the underlying HTTP response.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import httpx
from django.conf import settings

logger = logging.getLogger(__name__)


@dataclass
class LLMMessage:
    """A message in a chat conversation."""
    role: str  # "system", "user", or "assistant"
    content: str


class LLMError(Exception):
    """Raised when an LLM call fails. status_code is the provider's HTTP status, if any."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _sse_data(lines: Iterator[str]) -> Iterator[str]:
    """Yield the payload of every `data:` line of a server-sent event stream."""
    for line in lines:
        if line.startswith('data:'):
            yield line[5:].strip()


class BaseLLMClient(ABC):
    """Abstract base class for LLM clients."""

    timeout: float = 120.0
    transport: Optional[httpx.BaseTransport] = None

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model name being used."""
        pass

    @abstractmethod
    def _build_request(
        self,
        messages: List[LLMMessage],
        temperature: float,
        max_tokens: int,
    ) -> Dict[str, Any]:
        """Return kwargs for httpx.Client.stream('POST', ...)."""
        pass

    @abstractmethod
    def _parse_lines(self, lines: Iterator[str]) -> Iterator[str]:
        """Turn response lines into text deltas."""
        pass

    def _error_message(self, response: httpx.Response) -> str:
        try:
            error = response.json().get("error", {})
            if isinstance(error, dict):
                return error.get("message") or response.text
            return str(error)
        except ValueError:
            return response.text or f"HTTP {response.status_code}"

    def stream_chat(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.1,
        max_tokens: int = 1024,
    ) -> Iterator[str]:
        """
        Stream a chat completion.

        Yields:
            Non-empty text deltas in arrival order

        Raises:
            LLMError: If the request fails before or during streaming
        """
        logger.info(f"Streaming from {self.__class__.__name__}: model={self.model_name}, temp={temperature}")
        request = self._build_request(messages, temperature, max_tokens)

        try:
            with httpx.Client(timeout=float(self.timeout), transport=self.transport) as client:
                with client.stream("POST", **request) as response:
                    if response.is_error:
                        response.read()
                        message = self._error_message(response)
                        logger.error(f"{self.__class__.__name__} HTTP {response.status_code}: {message}")
                        raise LLMError(message, status_code=response.status_code)

                    for delta in self._parse_lines(response.iter_lines()):
                        if delta:
                            yield delta
        except httpx.TimeoutException:
            logger.error(f"{self.__class__.__name__} request timed out")
            raise LLMError("The model request timed out")
        except httpx.RequestError as e:
            logger.error(f"{self.__class__.__name__} connection error: {e}")
            raise LLMError("Could not connect to the model service")


class GeminiClient(BaseLLMClient):
    """LLM client for Google Gemini API (streamGenerateContent over SSE)."""

    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else getattr(settings, 'GEMINI_API_KEY', '')
        self.model = model or getattr(settings, 'GEMINI_MODEL', 'gemini-2.5-flash')
        self.timeout = timeout or getattr(settings, 'GEMINI_TIMEOUT', 120)
        self.transport = transport

        if not self.api_key:
            raise LLMError("GEMINI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def _build_request(self, messages, temperature, max_tokens):
        # Gemini takes the system prompt separately and calls the assistant "model"
        system_instruction = None
        contents = []

        for msg in messages:
            if msg.role == "system":
                system_instruction = msg.content
            else:
                contents.append({
                    "role": "model" if msg.role == "assistant" else "user",
                    "parts": [{"text": msg.content}]
                })

        body: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
                "topP": 0.8,
                "topK": 40,
            }
        }
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        return {
            "url": f"{self.base_url}/models/{self.model}:streamGenerateContent",
            "params": {"alt": "sse", "key": self.api_key},
            "json": body,
        }

    def _parse_lines(self, lines):
        for payload in _sse_data(lines):
            if not payload:
                continue
            data = json.loads(payload)

            block_reason = data.get("promptFeedback", {}).get("blockReason")
            if block_reason:
                raise LLMError(f"Request blocked by Gemini: {block_reason}")

            for candidate in data.get("candidates", [])[:1]:
                for part in candidate.get("content", {}).get("parts", []):
                    yield part.get("text", "")


class OllamaClient(BaseLLMClient):
    """LLM client for Ollama local inference (NDJSON stream)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url or getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434')
        self.model = model or getattr(settings, 'OLLAMA_CHAT_MODEL', 'llama3.2')
        self.timeout = timeout or getattr(settings, 'OLLAMA_CHAT_TIMEOUT', 600)
        self.transport = transport

    @property
    def model_name(self) -> str:
        return self.model

    def _build_request(self, messages, temperature, max_tokens):
        return {
            "url": f"{self.base_url}/api/chat",
            "json": {
                "model": self.model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "stream": True,
                "options": {
                    "temperature": temperature,
                    "num_predict": max_tokens,
                }
            },
        }

    def _parse_lines(self, lines):
        for line in lines:
            if not line.strip():
                continue
            data = json.loads(line)
            if data.get("error"):
                raise LLMError(f"Ollama error: {data['error']}")
            yield data.get("message", {}).get("content", "")
            if data.get("done"):
                return


class OpenAICompatibleClient(BaseLLMClient):
    """
    LLM client for OpenAI-compatible APIs (SSE stream ending in [DONE]).

    Works with: OpenAI, Azure OpenAI, Groq, Together, local servers, etc.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else getattr(settings, 'OPENAI_API_KEY', '')
        self.base_url = base_url or getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com/v1')
        self.model = model or getattr(settings, 'OPENAI_MODEL', 'gpt-4o-mini')
        self.timeout = timeout or getattr(settings, 'OPENAI_TIMEOUT', 120)
        self.transport = transport

        if not self.api_key:
            raise LLMError("OPENAI_API_KEY not configured")

    @property
    def model_name(self) -> str:
        return self.model

    def _build_request(self, messages, temperature, max_tokens):
        return {
            "url": f"{self.base_url}/chat/completions",
            "json": {
                "model": self.model,
                "messages": [{"role": m.role, "content": m.content} for m in messages],
                "temperature": temperature,
                "max_tokens": max_tokens,
                "stream": True,
            },
            "headers": {"Authorization": f"Bearer {self.api_key}"},
        }

    def _parse_lines(self, lines):
        for payload in _sse_data(lines):
            if payload == "[DONE]":
                return
            if not payload:
                continue
            data = json.loads(payload)
            for choice in data.get("choices", [])[:1]:
                yield choice.get("delta", {}).get("content") or ""


# =============================================================================
# Client Factory
# =============================================================================

def create_llm_client(provider: Optional[str] = None) -> BaseLLMClient:
    """
    Build the LLM client for a provider (LLM_PROVIDER by default):
    - "gemini" (default): Google Gemini API
    - "ollama": Local Ollama inference
    - "openai": OpenAI or compatible API
    """
    provider = (provider or getattr(settings, 'LLM_PROVIDER', 'gemini')).lower()

    if provider == 'ollama':
        logger.info("Using Ollama for LLM inference")
        return OllamaClient()
    if provider == 'openai':
        logger.info("Using OpenAI-compatible API for LLM inference")
        return OpenAICompatibleClient()
    logger.info("Using Gemini API for LLM inference")
    return GeminiClient()
