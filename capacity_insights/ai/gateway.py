"""
Capacity Insights
LLM Gateway — provider-agnostic chat router for insight texts.

    - Multi-provider support (Anthropic Claude, OpenAI, Gemini, local stub)
    - Explicit provider selection via INSIGHTS_LLM_PROVIDER
    - Auto-retry with exponential backoff
    - Token / latency logging

Usage:
    from capacity_insights.ai.gateway import LLMGateway
    gw = LLMGateway(provider="anthropic")
    result = gw.chat([{"role": "user", "content": "..."}], max_tokens=500)
"""

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod

from capacity_insights.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    name = "abstract"

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, timeout.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider."""

    name = "anthropic"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.api_key, max_retries=0)
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
            "max_tokens": kwargs.get("max_tokens", 500),
            "temperature": kwargs.get("temperature", 0.3),
        }
        if system_msg:
            params["system"] = system_msg
        if kwargs.get("timeout"):
            params["timeout"] = kwargs["timeout"]

        response = client.messages.create(**params)

        return {
            "content": response.content[0].text,
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
        }


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI GPT provider."""

    name = "openai"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            import openai
            self._client = openai.OpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    def chat(self, messages: list, model: str = "gpt-4o-mini", **kwargs) -> dict:
        client = self._get_client()
        params = {
            "model": model,
            "messages": messages,
            "max_tokens": kwargs.get("max_tokens", 500),
            "temperature": kwargs.get("temperature", 0.3),
        }
        if kwargs.get("timeout"):
            params["timeout"] = kwargs["timeout"]
        response = client.chat.completions.create(**params)
        choice = response.choices[0]
        return {
            "content": choice.message.content or "",
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "model": model,
        }


# ── Google Gemini Provider ────────────────────────────────────────────────────

class GeminiProvider(LLMProvider):
    """
    Google Gemini API provider.

    Environment:
        GEMINI_API_KEY — obtain at https://aistudio.google.com/apikey
    """

    name = "gemini"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or os.getenv("GEMINI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def chat(self, messages: list, model: str = "gemini-2.5-flash", **kwargs) -> dict:
        client = self._get_client()
        from google.genai import types

        # Gemini takes the system prompt separately and uses "model" for assistant turns
        system_parts = []
        contents = []
        for m in messages:
            if m["role"] == "system":
                system_parts.append(m["content"])
            else:
                role = "model" if m["role"] == "assistant" else "user"
                contents.append(
                    types.Content(role=role, parts=[types.Part(text=m["content"])])
                )

        config = types.GenerateContentConfig(
            temperature=kwargs.get("temperature", 0.3),
            max_output_tokens=kwargs.get("max_tokens", 500),
        )
        if system_parts:
            config.system_instruction = "\n\n".join(system_parts)

        response = client.models.generate_content(model=model, contents=contents, config=config)

        prompt_tokens = getattr(response.usage_metadata, "prompt_token_count", 0) or 0
        completion_tokens = getattr(response.usage_metadata, "candidates_token_count", 0) or 0

        return {
            "content": response.text or "",
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "model": model,
        }


# ── Local Stub Provider (for dev/test without API keys) ──────────────────────

class LocalStubProvider(LLMProvider):
    """
    Local stub that returns deterministic insight JSON for dev/testing.
    No API key required.
    """

    name = "local"

    def chat(self, messages: list, model: str = "local-stub", **kwargs) -> dict:
        user_msg = ""
        for m in reversed(messages):
            if m["role"] == "user":
                user_msg = m["content"]
                break

        content = self._generate_stub_response(user_msg)

        return {
            "content": content,
            "prompt_tokens": len(user_msg.split()) * 2,  # rough estimate
            "completion_tokens": len(content.split()) * 2,
            "model": "local-stub",
        }

    @staticmethod
    def _generate_stub_response(user_msg: str) -> str:
        """Echo the first prompt line back as a well-formed insight payload."""
        headline = next((line.strip() for line in user_msg.splitlines() if line.strip()), "Insight")
        return json.dumps({
            "summary": f"{headline[:80]}: status evaluated from current burn rate.",
            "detail": "Generated by the local stub provider from the supplied figures.",
            "recommendation": "Review the allocation plan for the coming week.",
        })


# ═══════════════════════════════════════════════════════════════════════════
#  Gateway
# ═══════════════════════════════════════════════════════════════════════════

class LLMGateway:
    """
    Central gateway for all LLM calls.

    Provider resolution:
        - explicit ``provider`` (or INSIGHTS_LLM_PROVIDER): must have its API key,
          otherwise ConfigurationError is raised at construction time
        - no provider configured: first provider whose key is present;
          ``available`` is False when there is none
    """

    PROVIDERS = {
        "anthropic": AnthropicProvider,
        "openai": OpenAIProvider,
        "gemini": GeminiProvider,
        "local": LocalStubProvider,
    }

    # Provider → API key environment variable
    PROVIDER_KEYS = {
        "anthropic": "ANTHROPIC_API_KEY",
        "openai": "OPENAI_API_KEY",
        "gemini": "GEMINI_API_KEY",
    }

    DEFAULT_MODELS = {
        "anthropic": "claude-3-5-haiku-20241022",
        "openai": "gpt-4o-mini",
        "gemini": "gemini-2.5-flash",
        "local": "local-stub",
    }

    def __init__(self, provider: str | None = None, model: str | None = None):
        self.provider_name = self._resolve_provider(provider)
        self.provider = (self.PROVIDERS[self.provider_name]()
                         if self.provider_name else None)
        self.model = model or self.DEFAULT_MODELS.get(self.provider_name or "", "local-stub")

    @property
    def available(self) -> bool:
        return self.provider is not None

    def _resolve_provider(self, provider: str | None) -> str | None:
        if provider:
            provider = provider.strip().lower()
            if provider not in self.PROVIDERS:
                raise ConfigurationError(
                    "INSIGHTS_LLM_PROVIDER", f"Unknown LLM provider '{provider}'"
                )
            env_key = self.PROVIDER_KEYS.get(provider)
            if env_key and not os.getenv(env_key):
                raise ConfigurationError(env_key)
            return provider

        for name, env_key in self.PROVIDER_KEYS.items():
            if os.getenv(env_key):
                return name
        logger.info("No LLM API key configured — insight texts use templates only")
        return None

    def chat(
        self,
        messages: list,
        *,
        purpose: str = "",
        max_retries: int = 2,
        **kwargs,
    ) -> dict:
        """
        Send a chat completion request with retry.

        Returns:
            dict: {content, prompt_tokens, completion_tokens, model, provider, latency_ms}

        Raises:
            RuntimeError: no provider is available or all attempts failed.
        """
        if self.provider is None:
            raise RuntimeError("No LLM provider available")

        last_error = None
        for attempt in range(1, max_retries + 1):
            start_time = time.time()
            try:
                result = self.provider.chat(messages, self.model, **kwargs)
                latency_ms = int((time.time() - start_time) * 1000)
                result["provider"] = self.provider_name
                result["latency_ms"] = latency_ms
                logger.debug(
                    "LLM call ok purpose=%s provider=%s model=%s tokens=%d+%d",
                    purpose, self.provider_name, self.model,
                    result["prompt_tokens"], result["completion_tokens"],
                    extra={"duration_ms": latency_ms},
                )
                return result
            except Exception as e:
                last_error = e
                logger.warning("LLM call attempt %d/%d failed: %s", attempt, max_retries, e)
                if attempt < max_retries:
                    backoff = min(2 ** (attempt - 1), 4)
                    threading.Event().wait(backoff)

        raise RuntimeError(f"LLM call failed after {max_retries} attempts: {last_error}")
