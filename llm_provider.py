"""LLM Provider Interface and Implementations - Strategy pattern for the provider chain."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp

from config import Settings
from exceptions import MalformedResponseError, ProviderError, ProviderRateLimitedError, ProviderTimeoutError
from explanation_parser import parse_explanation
from models import AIExplanation
from rate_limiter import FixedWindowRateLimiter
from scheduler import Scheduler

logger = logging.getLogger(__name__)

HEALTH_CHECK_PROMPT = "Reply with the single word: ok"
SECONDARY_OUTBOUND_LIMIT_PER_MINUTE = 60


def build_prompt(code: int, context: Optional[str] = None) -> str:
    """Prompt asking for a JSON explanation with 2-3 fixes."""
    context_section = f"\nContext: {context}" if context else ""
    return (
        "You are a Solana blockchain developer assistant. Explain the following Anchor error code "
        "in simple terms and provide 2-3 practical fix suggestions.\n\n"
        f"Error Code: {code}{context_section}\n\n"
        "Format your response as JSON with this exact structure:\n"
        "{\n"
        '  "explanation": "Brief, clear explanation of what this error means",\n'
        '  "fixes": ["Specific actionable suggestion", "Alternative approach or additional check", '
        '"Tool or debugging technique"]\n'
        "}\n\n"
        "Focus on Solana/Anchor-specific solutions and mention relevant tools like 'anchor test' "
        "or 'solana logs'. Keep explanations concise and actionable."
    )


class LLMProvider(ABC):
    """Abstract base class for inference providers. Subclasses only implement invoke()."""

    # Quality scoring for parsed answers (see explanation_parser.score_confidence)
    BASE_CONFIDENCE = 0.7
    CONFIDENCE_CAP = 1.0
    FALLBACK_CONFIDENCE = 0.5

    def __init__(self, name: str, model: str, timeout_seconds: float = 4.0):
        self.name = name
        self.model = model
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    async def invoke(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        """Send prompt, return the completion text. Raises ProviderError on any failure."""
        pass

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def generate_explanation(self, code: int, context: Optional[str] = None) -> AIExplanation:
        """Build the prompt, call the provider and parse the answer."""
        text = await self.invoke(build_prompt(code, context))
        return parse_explanation(
            text,
            code=code,
            model=self.model,
            base_confidence=self.BASE_CONFIDENCE,
            confidence_cap=self.CONFIDENCE_CAP,
            fallback_confidence=self.FALLBACK_CONFIDENCE,
        )

    async def health_check(self) -> bool:
        """Cheap synthetic call. Raises on failure; the health tracker converts that to False."""
        text = await self.invoke(HEALTH_CHECK_PROMPT, max_tokens=5)
        return bool(text and text.strip())


class ChatCompletionProvider(LLMProvider):
    """OpenAI-compatible chat completions API over aiohttp (Groq, OpenAI, gateways)."""

    POOL_TIMEOUT_SEC = 30.0

    def __init__(
        self,
        name: str,
        api_url: str,
        api_key: Optional[str],
        model: str,
        timeout_seconds: float = 4.0,
        temperature: float = 0.3,
        max_tokens: int = 1000,
        outbound_limiter: Optional[FixedWindowRateLimiter] = None,
    ):
        super().__init__(name=name, model=model, timeout_seconds=timeout_seconds)
        self.api_url = api_url
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.outbound_limiter = outbound_limiter
        self.session: Optional[aiohttp.ClientSession] = None
        if not self.api_key:
            logger.warning(f"{name}: API key not set, every call will fail")
        logger.info(f"{name} provider initialized (model={model})")

    async def connect(self) -> None:
        """Create aiohttp session for connection pooling."""
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.POOL_TIMEOUT_SEC, connect=10))
            logger.info(f"{self.name} connection pool created")

    async def disconnect(self) -> None:
        """Close aiohttp session."""
        if self.session:
            await self.session.close()
            self.session = None
            logger.info(f"{self.name} connection pool closed")

    async def invoke(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        if not self.api_key:
            raise ProviderError(f"{self.name}: API key not configured", provider=self.name)

        if self.outbound_limiter is not None:
            verdict = self.outbound_limiter.check_and_increment(self.name)
            if not verdict.allowed:
                raise ProviderRateLimitedError(
                    f"{self.name}: outbound limit of {verdict.limit}/min reached, retry in {verdict.retry_after}s",
                    provider=self.name,
                )

        if self.session is None:
            await self.connect()

        response_json = await self._post(prompt, max_tokens or self.max_tokens)
        choice = response_json["choices"][0]
        message = choice.get("message") or {}
        content = message.get("content") or choice.get("text") or ""
        if not content.strip():
            raise MalformedResponseError(f"{self.name}: empty completion", provider=self.name)

        usage = response_json.get("usage", {})
        logger.info(f"{self.name} call | model={self.model} | tokens={usage.get('total_tokens', 0)}")
        return content

    async def _post(self, prompt: str, max_tokens: int) -> Dict[str, Any]:
        """Make HTTP request and map every failure to a ProviderError subclass."""
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": max_tokens,
        }

        try:
            async with self.session.post(
                self.api_url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                if response.status == 401:
                    raise ProviderError(f"{self.name}: invalid API key (401)", provider=self.name)
                elif response.status == 429:
                    raise ProviderRateLimitedError(f"{self.name}: rate limited (429)", provider=self.name)
                elif response.status >= 400:
                    error_text = await response.text()
                    raise ProviderError(f"{self.name}: HTTP {response.status}: {error_text[:200]}", provider=self.name)

                try:
                    response_json = await response.json(content_type=None)
                except ValueError as e:
                    raise MalformedResponseError(f"{self.name}: response is not JSON", provider=self.name) from e

                if not isinstance(response_json, dict):
                    raise MalformedResponseError(f"{self.name}: unexpected payload type", provider=self.name)
                if response_json.get("error"):
                    raise ProviderError(f"{self.name}: {response_json['error']}", provider=self.name)
                if not response_json.get("choices"):
                    raise MalformedResponseError(f"{self.name}: missing choices", provider=self.name)
                return response_json

        except asyncio.TimeoutError as e:
            logger.error(f"{self.name}: request timeout after {self.timeout_seconds}s")
            raise ProviderTimeoutError(f"{self.name}: timeout after {self.timeout_seconds}s", provider=self.name) from e
        except aiohttp.ClientError as e:
            logger.error(f"{self.name}: network error: {e}")
            raise ProviderError(f"{self.name}: {type(e).__name__}: {e}", provider=self.name) from e


class SecondaryChatCompletionProvider(ChatCompletionProvider):
    """Fallback provider: lower base confidence, capped below the primary."""

    BASE_CONFIDENCE = 0.6
    CONFIDENCE_CAP = 0.9
    FALLBACK_CONFIDENCE = 0.4


def build_providers(settings: Settings, scheduler: Scheduler) -> list[LLMProvider]:
    """Providers in priority order: primary (Groq), then the external API when configured."""
    providers: list[LLMProvider] = [
        ChatCompletionProvider(
            name="primary",
            api_url=settings.groq_api_url,
            api_key=settings.groq_api_key,
            model=settings.groq_model,
            timeout_seconds=settings.primary_timeout_seconds,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
        )
    ]

    if settings.external_configured:
        outbound = FixedWindowRateLimiter(
            scheduler, limit=SECONDARY_OUTBOUND_LIMIT_PER_MINUTE, window_seconds=60, name="secondary-outbound"
        )
        providers.append(
            SecondaryChatCompletionProvider(
                name="secondary",
                api_url=settings.external_api_url,
                api_key=settings.external_api_key,
                model=settings.external_model,
                timeout_seconds=settings.secondary_timeout_seconds,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
                outbound_limiter=outbound,
            )
        )
    else:
        logger.info("Secondary provider not configured (EXTERNAL_AI_API_URL / EXTERNAL_AI_API_KEY)")

    return providers
