"""
Chat-completion client (litellm).

One ``chat()`` call = one outbound request.  No caching and no retries at
this layer: the planner owns the retry policy, because only it knows what
makes a reply worth retrying.

Provider and model are picked from the environment the same way for every
caller (``LLM_PROVIDER`` / ``LLM_MODEL``); the credential is ``LLM_API_KEY``
and is checked before anything touches the network.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

import litellm
import openai

from errors import AuthError, EmptyResponseError, MissingCredentialError, TransportError

logger = logging.getLogger(__name__)

# Silence litellm's own verbose logging
litellm.suppress_debug_info = True
# Drop params unsupported by the active model (e.g. response_format on older models)
litellm.drop_params = True

_LLM_DEFAULTS = {
    "groq":      "llama-3.1-8b-instant",
    "openai":    "gpt-4o-mini",
    "gemini":    "gemini-2.0-flash",
    "anthropic": "claude-sonnet-4-20250514",
}

DEFAULT_MAX_TOKENS = 4000
DEFAULT_TOP_P = 1


def _llm_name() -> str:
    """Return the litellm model string (provider/model format)."""
    provider = os.getenv("LLM_PROVIDER", "groq").lower().strip()
    if provider not in _LLM_DEFAULTS:
        logger.warning("Unknown LLM_PROVIDER %r, falling back to groq", provider)
        provider = "groq"
    model = os.getenv("LLM_MODEL", _LLM_DEFAULTS[provider])
    if provider == "openai":
        return model  # litellm uses bare model name for OpenAI
    return f"{provider}/{model}"


def _get_api_key() -> str:
    """Read the key lazily so that dotenv has loaded by the time we need it."""
    return os.getenv("LLM_API_KEY", "").strip()


def require_credential() -> str:
    """Return the configured API key or fail before any network call."""
    api_key = _get_api_key()
    if not api_key:
        raise MissingCredentialError(
            "LLM_API_KEY is not set. Put it in the environment or in .env"
        )
    return api_key


class LLMClient:
    """Thin wrapper around ``litellm.completion`` with a JSON-only reply contract."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key or require_credential()
        self.model = model or _llm_name()
        self.max_tokens = max_tokens or int(os.getenv("LLM_MAX_TOKENS", DEFAULT_MAX_TOKENS))
        self.timeout = timeout or float(os.getenv("LLM_TIMEOUT_SECS", "60"))

    def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7) -> str:
        """Send *messages* and return the reply text.

        Raises AuthError on a 401, TransportError on any other failed
        request, EmptyResponseError if the reply carries no content.
        """
        logger.info("LLM request: model=%s messages=%d temperature=%.2f",
                    self.model, len(messages), temperature)
        try:
            response = litellm.completion(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=self.max_tokens,
                top_p=DEFAULT_TOP_P,
                response_format={"type": "json_object"},
                api_key=self.api_key,
                timeout=self.timeout,
            )
        except litellm.AuthenticationError as exc:
            logger.error("LLM authentication rejected: %s", exc)
            raise AuthError(str(exc), status_code=401) from exc
        except openai.APIError as exc:
            status = getattr(exc, "status_code", None)
            if status == 401:
                raise AuthError(str(exc), status_code=401) from exc
            logger.error("LLM request failed (status=%s): %s", status, exc)
            raise TransportError(str(exc), status_code=status) from exc

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content or not content.strip():
            raise EmptyResponseError("No content in LLM response")
        return content
