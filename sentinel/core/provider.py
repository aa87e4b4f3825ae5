"""Chat-completion clients used by the decision oracle."""

import logging
from typing import Any, Optional

import aiohttp
from groq import AsyncGroq

logger = logging.getLogger(__name__)


class CompletionError(Exception):
    """The completion endpoint returned an error or an unusable body."""
    pass


class GroqCompletionClient:
    """
    Groq chat completions with JSON output.

    Client-level retries are disabled: one request per consultation.
    """

    DEFAULT_MODEL = "llama-3.3-70b-versatile"

    def __init__(self, api_key: str, model: Optional[str] = None, timeout: float = 30.0):
        self.client = AsyncGroq(api_key=api_key, max_retries=0, timeout=timeout)
        self.model = model or self.DEFAULT_MODEL

    @property
    def name(self) -> str:
        return f"groq:{self.model}"

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
            max_tokens=512,
            temperature=0.2,
        )
        content = response.choices[0].message.content
        if content is None:
            raise CompletionError("Groq returned an empty message")
        return content


class OpenAICompatibleClient:
    """
    Any OpenAI-compatible ``/chat/completions`` endpoint over aiohttp.

    Defaults to xAI's Grok.
    """

    DEFAULT_BASE_URL = "https://api.x.ai/v1"
    DEFAULT_MODEL = "grok-4-1-fast-reasoning"

    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.model = model or self.DEFAULT_MODEL
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout

    @property
    def name(self) -> str:
        return f"openai:{self.model}"

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                    "response_format": {"type": "json_object"},
                    "max_tokens": 512,
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status != 200:
                    raise CompletionError(f"Completion API error: {response.status}")
                data = await response.json(content_type=None)

        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Malformed completion response: {e}") from e


def build_completion_client(config: Any) -> Optional[Any]:
    """
    Build the configured completion client.

    Returns None when no API key is configured; the oracle then runs offline.
    """
    api_key = config.get_oracle_api_key()
    if not api_key:
        logger.warning("No oracle API key configured - decisions default to HOLD")
        return None

    provider = config.get_oracle_provider()
    timeout = config.get_oracle_timeout()
    model = config.get("ORACLE_MODEL")
    if provider == "openai":
        client = OpenAICompatibleClient(
            api_key=api_key,
            model=model,
            base_url=config.get("ORACLE_BASE_URL"),
            timeout=timeout,
        )
    else:
        client = GroqCompletionClient(api_key=api_key, model=model, timeout=timeout)

    logger.info(f"Oracle provider: {client.name}")
    return client
