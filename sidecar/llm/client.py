"""
LLM text-completion client used for style analysis.

Supports Claude (Anthropic API), OpenAI and Claude on AWS Bedrock. Analysis
asks for a JSON document in plain text, so only text completion is exposed.

BAA (Business Associate Agreement) compliance:
  Vendors with signed BAAs: bedrock (AWS BAA covers Bedrock).
  In production (REQUIRE_AUTH=true), only BAA-covered providers may be used.
  Set BAA_PROVIDERS env var to override (comma-separated provider names).
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

# Providers with signed BAAs; only these may receive clinical text in production.
_BAA_PROVIDERS: set[str] = set(
    p.strip().lower()
    for p in os.getenv("BAA_PROVIDERS", "bedrock").split(",")
    if p.strip()
)
_REQUIRE_AUTH = os.getenv("REQUIRE_AUTH", "").lower() == "true"

# Bedrock requires inference profile IDs (with regional prefix) for on-demand use.
_BEDROCK_MODEL_MAP = {
    "claude-sonnet-4-6": "us.anthropic.claude-sonnet-4-6",
    "claude-sonnet-4-5": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
    "claude-sonnet-4-20250514": "us.anthropic.claude-sonnet-4-20250514-v1:0",
    "claude-haiku-4-5-20251001": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
}

_BEDROCK_REGION_PREFIX = {
    "us-east-1": "us",
    "us-east-2": "us",
    "us-west-2": "us",
    "eu-west-1": "eu",
    "eu-central-1": "eu",
    "ap-southeast-2": "ap",
    "ap-northeast-1": "ap",
}


def _to_bedrock_model_id(model: str, region: str = "us-east-1") -> str:
    """Convert an Anthropic model ID to its Bedrock inference profile ID."""
    prefix = _BEDROCK_REGION_PREFIX.get(region, "us")
    if model[:3] in ("us.", "eu.", "ap.") and "anthropic." in model:
        return model
    if "anthropic." in model:
        return f"{prefix}.{model}"
    if model in _BEDROCK_MODEL_MAP:
        return f"{prefix}.{_BEDROCK_MODEL_MAP[model][3:]}"
    return f"{prefix}.anthropic.{model}-v1:0"


class LLMProvider(str, Enum):
    CLAUDE = "claude"
    OPENAI = "openai"
    BEDROCK = "bedrock"


@dataclass
class LLMResponse:
    """Raw response from an LLM API call."""

    provider: LLMProvider
    raw_content: str
    model: str
    input_tokens: int
    output_tokens: int

    @property
    def text_content(self) -> str:
        return self.raw_content


class LLMClient:
    """Unified LLM client for plain-text completions."""

    def __init__(
        self,
        provider: LLMProvider,
        api_key: str | dict,
        model: Optional[str] = None,
    ):
        # BAA guard: in production, block providers without a signed BAA
        if _REQUIRE_AUTH and provider.value.lower() not in _BAA_PROVIDERS:
            raise ValueError(
                f"Provider '{provider.value}' is not BAA-compliant. "
                f"Allowed providers: {', '.join(sorted(_BAA_PROVIDERS))}. "
                f"Set BAA_PROVIDERS env var to update."
            )
        self.provider = provider
        self.api_key = api_key
        self.model = model or self._default_model()

    def _default_model(self) -> str:
        if self.provider in (LLMProvider.CLAUDE, LLMProvider.BEDROCK):
            return "claude-sonnet-4-6"
        return "gpt-4.1-mini"

    async def call(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 4096,
        temperature: float = 0.2,
    ) -> LLMResponse:
        """Send a prompt and return a plain text response."""
        if self.provider == LLMProvider.CLAUDE:
            return await self._call_claude_text(system_prompt, user_prompt, max_tokens, temperature)
        elif self.provider == LLMProvider.BEDROCK:
            return await self._call_bedrock_text(system_prompt, user_prompt, max_tokens, temperature)
        else:
            return await self._call_openai_text(system_prompt, user_prompt, max_tokens, temperature)

    async def _call_claude_text(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        import anthropic

        client = anthropic.AsyncAnthropic(api_key=self.api_key)
        response = await client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )

        raw_text = "".join(block.text for block in response.content if block.type == "text")

        return LLMResponse(
            provider=LLMProvider.CLAUDE,
            raw_content=raw_text,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def _call_openai_text(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        import openai

        client = openai.AsyncOpenAI(api_key=self.api_key)
        response = await client.chat.completions.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )

        return LLMResponse(
            provider=LLMProvider.OPENAI,
            raw_content=response.choices[0].message.content or "",
            model=response.model,
            input_tokens=response.usage.prompt_tokens,
            output_tokens=response.usage.completion_tokens,
        )

    def _bedrock_region(self) -> str:
        if isinstance(self.api_key, dict):
            return self.api_key.get("region", "us-east-1")
        return "us-east-1"

    def _get_bedrock_client(self):
        """Create a boto3 Bedrock Runtime client.

        When access_key is "iam_role", boto3 falls back to its default
        credential chain (ECS task role, instance profile, etc.).
        """
        import boto3

        creds = self.api_key
        if not isinstance(creds, dict):
            raise ValueError("Bedrock provider requires AWS credentials dict")

        if creds.get("access_key") == "iam_role":
            return boto3.client("bedrock-runtime", region_name=self._bedrock_region())

        return boto3.client(
            "bedrock-runtime",
            aws_access_key_id=creds["access_key"],
            aws_secret_access_key=creds["secret_key"],
            region_name=self._bedrock_region(),
        )

    async def _call_bedrock_text(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> LLMResponse:
        bedrock = self._get_bedrock_client()
        model_id = _to_bedrock_model_id(self.model, self._bedrock_region())

        def _invoke():
            return bedrock.converse(
                modelId=model_id,
                system=[{"text": system_prompt}],
                messages=[{"role": "user", "content": [{"text": user_prompt}]}],
                inferenceConfig={"maxTokens": max_tokens, "temperature": temperature},
            )

        response = await asyncio.get_running_loop().run_in_executor(None, _invoke)

        raw_text = "".join(
            block["text"] for block in response["output"]["message"]["content"] if "text" in block
        )

        usage = response.get("usage", {})
        return LLMResponse(
            provider=LLMProvider.BEDROCK,
            raw_content=raw_text,
            model=model_id,
            input_tokens=usage.get("inputTokens", 0),
            output_tokens=usage.get("outputTokens", 0),
        )


def get_llm_client() -> LLMClient:
    """Build the analysis client from environment variables.

    STYLE_LLM_PROVIDER selects claude, openai or bedrock (default: bedrock in
    web mode, claude otherwise). Raises ValueError when credentials are missing.
    """
    default_provider = "bedrock" if _REQUIRE_AUTH else "claude"
    name = os.getenv("STYLE_LLM_PROVIDER", default_provider).strip().lower()
    try:
        provider = LLMProvider(name)
    except ValueError:
        raise ValueError(f"Unknown STYLE_LLM_PROVIDER '{name}'")

    model = os.getenv("STYLE_LLM_MODEL") or None

    if provider == LLMProvider.BEDROCK:
        access_key = os.getenv("AWS_ACCESS_KEY_ID", "")
        creds = {
            "access_key": access_key or "iam_role",
            "secret_key": os.getenv("AWS_SECRET_ACCESS_KEY", ""),
            "region": os.getenv("AWS_REGION", "us-east-1"),
        }
        return LLMClient(provider, creds, model)

    env_key = "ANTHROPIC_API_KEY" if provider == LLMProvider.CLAUDE else "OPENAI_API_KEY"
    api_key = os.getenv(env_key, "")
    if not api_key:
        raise ValueError(f"{env_key} is not set")
    return LLMClient(provider, api_key, model)
