"""
Feedback Action Engine
LLM client: provider-agnostic ``complete(prompt, max_tokens) -> {"text"}``.

Providers:
    - Anthropic Claude, OpenAI, Google Gemini (SDKs imported lazily)
    - LocalStubProvider for development without API keys

Any provider failure is retried with exponential backoff and then surfaced
as DependencyFailure, which callers translate into their deterministic
fallback.

Usage:
    from feedback_actions.ai.llm_client import LLMClient
    client = LLMClient()
    text = client.complete("Suggest actions for ...", max_tokens=800)["text"]
"""

import logging
import os
import time
from abc import ABC, abstractmethod

from feedback_actions.core.exceptions import DependencyFailure

logger = logging.getLogger(__name__)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider."""

    def __init__(self):
        self.api_key = os.getenv("ANTHROPIC_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import anthropic
                self._client = anthropic.Anthropic(api_key=self.api_key)
            except ImportError:
                raise RuntimeError("anthropic package not installed. Run: pip install anthropic")
        return self._client

    def chat(self, messages: list, model: str = "claude-3-5-haiku-20241022", **kwargs) -> dict:
        client = self._get_client()
        system_msg = ""
        chat_messages = []
        for m in messages:
            if m["role"] == "system":
                system_msg = m["content"]
            else:
                chat_messages.append(m)

        params = {
            "model": model,
            "messages": chat_messages,
            "max_tokens": kwargs.get("max_tokens", 800),
            "temperature": kwargs.get("temperature", 0.3),
        }
        if system_msg:
            params["system"] = system_msg

        response = client.messages.create(**params)
        return {
            "content": response.content[0].text,
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
        }


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI chat completion provider."""

    def __init__(self):
        self.api_key = os.getenv("OPENAI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import openai
                self._client = openai.OpenAI(api_key=self.api_key)
            except ImportError:
                raise RuntimeError("openai package not installed. Run: pip install openai")
        return self._client

    def chat(self, messages: list, model: str = "gpt-4o-mini", **kwargs) -> dict:
        client = self._get_client()
        response = client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=kwargs.get("max_tokens", 800),
            temperature=kwargs.get("temperature", 0.3),
        )
        choice = response.choices[0]
        return {
            "content": choice.message.content,
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "model": model,
        }


# ── Google Gemini Provider ────────────────────────────────────────────────────

class GeminiProvider(LLMProvider):
    """Google Gemini API provider. Environment: GEMINI_API_KEY."""

    def __init__(self):
        self.api_key = os.getenv("GEMINI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                from google import genai
                self._client = genai.Client(api_key=self.api_key)
            except ImportError:
                raise RuntimeError(
                    "google-genai package not installed. Run: pip install google-genai"
                )
        return self._client

    def chat(self, messages: list, model: str = "gemini-2.5-flash", **kwargs) -> dict:
        client = self._get_client()
        from google.genai import types

        system_parts = []
        contents = []
        for m in messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
            else:
                role = "model" if m["role"] == "assistant" else "user"
                contents.append(types.Content(role=role, parts=[types.Part(text=m["content"])]))

        config = types.GenerateContentConfig(
            temperature=kwargs.get("temperature", 0.3),
            max_output_tokens=kwargs.get("max_tokens", 800),
        )
        if system_parts:
            config.system_instruction = "\n\n".join(system_parts)

        response = client.models.generate_content(model=model, contents=contents, config=config)
        return {
            "content": response.text or "",
            "prompt_tokens": getattr(response.usage_metadata, "prompt_token_count", 0) or 0,
            "completion_tokens": getattr(response.usage_metadata, "candidates_token_count", 0) or 0,
            "model": model,
        }


# ── Local Stub Provider (for dev/test without API keys) ──────────────────────

class LocalStubProvider(LLMProvider):
    """
    Deterministic stub. It answers with prose rather than JSON, so callers
    exercise their rule-based fallback.
    """

    def chat(self, messages: list, model: str = "local-stub", **kwargs) -> dict:
        user_msg = next((m["content"] for m in reversed(messages) if m["role"] == "user"), "")
        content = "Local stub: no language model configured."
        return {
            "content": content,
            "prompt_tokens": len(user_msg.split()) * 2,
            "completion_tokens": len(content.split()) * 2,
            "model": "local-stub",
        }


# ── Client ────────────────────────────────────────────────────────────────────

class LLMClient:
    """Routes completions to a provider by model name."""

    PROVIDER_MAP = {
        "claude-3-5-haiku-20241022": "anthropic",
        "claude-3-5-sonnet-20241022": "anthropic",
        "gpt-4o-mini": "openai",
        "gpt-4o": "openai",
        "gemini-2.5-flash": "gemini",
        "gemini-2.5-pro": "gemini",
        "local-stub": "local",
    }

    MAX_RETRIES = 2
    BACKOFF_SECONDS = 0.5

    def __init__(self, model: str | None = None):
        self.model = model or os.getenv("LLM_DEFAULT_MODEL", "gemini-2.5-flash")
        self._providers = {"local": LocalStubProvider()}
        if os.getenv("GEMINI_API_KEY"):
            self._providers["gemini"] = GeminiProvider()
        if os.getenv("ANTHROPIC_API_KEY"):
            self._providers["anthropic"] = AnthropicProvider()
        if os.getenv("OPENAI_API_KEY"):
            self._providers["openai"] = OpenAIProvider()

    def _get_provider(self) -> tuple[LLMProvider, str]:
        name = self.PROVIDER_MAP.get(self.model, "local")
        if name in self._providers:
            return self._providers[name], name
        logger.warning(
            "Provider '%s' not available (no API key?). Falling back to local stub for model '%s'.",
            name, self.model,
        )
        return self._providers["local"], "local"

    def complete(self, prompt: str, max_tokens: int = 800) -> dict:
        """Single-turn completion.

        Raises:
            DependencyFailure: every attempt failed.
        """
        provider, name = self._get_provider()
        messages = [{"role": "user", "content": prompt}]
        last_error = None
        for attempt in range(self.MAX_RETRIES + 1):
            try:
                started = time.monotonic()
                result = provider.chat(messages, model=self.model, max_tokens=max_tokens)
                logger.info(
                    "LLM completion via %s/%s in %dms (%s+%s tokens)",
                    name, result.get("model"), int((time.monotonic() - started) * 1000),
                    result.get("prompt_tokens"), result.get("completion_tokens"),
                )
                return {"text": result.get("content") or ""}
            except Exception as exc:
                last_error = exc
                logger.warning("LLM attempt %d via %s failed: %s", attempt + 1, name, exc)
                if attempt < self.MAX_RETRIES:
                    time.sleep(self.BACKOFF_SECONDS * (2 ** attempt))
        raise DependencyFailure("LLM", str(last_error))
