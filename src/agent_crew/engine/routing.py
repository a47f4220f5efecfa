"""Provider table and provider inference for agent LLM calls."""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum

from agent_crew.engine.errors import UnsupportedProviderError
from agent_crew.engine.models import BillingModel


class AdapterKind(str, Enum):
    """Wire protocol spoken by a provider adapter."""

    OPENAI_COMPATIBLE = "openai_compatible"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


@dataclass(frozen=True, slots=True)
class ProviderSpec:
    """Static description of one LLM vendor."""

    name: str
    adapter: AdapterKind
    base_url: str
    chat_base_url: str | None = None
    model_prefix: str | None = None
    requires_api_key: bool = True
    supports_native_tools: bool = False
    aggregator: bool = False
    input_per_1m: float = 5.0
    output_per_1m: float = 15.0
    billing_model: BillingModel = BillingModel.UNKNOWN

    @property
    def openai_base_url(self) -> str | None:
        """Base URL of the OpenAI-compatible chat endpoint, if the vendor exposes one."""

        if self.chat_base_url is not None:
            return self.chat_base_url
        if self.adapter is AdapterKind.OPENAI_COMPATIBLE:
            return self.base_url
        return None


def _compat(  # noqa: PLR0913
    name: str,
    base_url: str,
    *,
    model_prefix: str | None = None,
    native_tools: bool = True,
    aggregator: bool = False,
    billing_model: BillingModel = BillingModel.UNKNOWN,
) -> ProviderSpec:
    return ProviderSpec(
        name=name,
        adapter=AdapterKind.OPENAI_COMPATIBLE,
        base_url=base_url,
        model_prefix=model_prefix,
        supports_native_tools=native_tools,
        aggregator=aggregator,
        billing_model=billing_model,
    )


PROVIDERS: dict[str, ProviderSpec] = {
    "openai": _compat(
        "openai",
        "https://api.openai.com/v1",
        billing_model=BillingModel.PER_TOKEN,
    ),
    "anthropic": ProviderSpec(
        name="anthropic",
        adapter=AdapterKind.ANTHROPIC,
        base_url="https://api.anthropic.com/v1",
        chat_base_url="https://api.anthropic.com/v1",
        supports_native_tools=True,
        input_per_1m=3.0,
        output_per_1m=15.0,
        billing_model=BillingModel.PER_TOKEN,
    ),
    "google": ProviderSpec(
        name="google",
        adapter=AdapterKind.GOOGLE,
        base_url="https://generativelanguage.googleapis.com/v1beta",
        chat_base_url="https://generativelanguage.googleapis.com/v1beta/openai",
        supports_native_tools=True,
        input_per_1m=0.15,
        output_per_1m=0.60,
        billing_model=BillingModel.PER_TOKEN,
    ),
    "openrouter": _compat(
        "openrouter",
        "https://openrouter.ai/api/v1",
        model_prefix="openrouter/",
        aggregator=True,
        billing_model=BillingModel.PER_TOKEN,
    ),
    "groq": _compat(
        "groq",
        "https://api.groq.com/openai/v1",
        model_prefix="groq/",
        billing_model=BillingModel.PER_TOKEN,
    ),
    "mistral": _compat(
        "mistral",
        "https://api.mistral.ai/v1",
        billing_model=BillingModel.PER_TOKEN,
    ),
    "cohere": _compat(
        "cohere",
        "https://api.cohere.com/compatibility/v1",
        billing_model=BillingModel.PER_TOKEN,
    ),
    "together": _compat("together", "https://api.together.xyz/v1", aggregator=True),
    "nvidia": _compat("nvidia", "https://integrate.api.nvidia.com/v1", aggregator=True),
    "huggingface": _compat(
        "huggingface",
        "https://api-inference.huggingface.co/v1",
        native_tools=False,
        aggregator=True,
    ),
    "venice": _compat("venice", "https://api.venice.ai/api/v1", native_tools=False),
    "minimax": _compat("minimax", "https://api.minimaxi.chat/v1", native_tools=False),
    "moonshot": _compat("moonshot", "https://api.moonshot.cn/v1"),
    "perplexity": _compat("perplexity", "https://api.perplexity.ai", native_tools=False),
    "ollama": ProviderSpec(
        name="ollama",
        adapter=AdapterKind.OPENAI_COMPATIBLE,
        base_url="http://localhost:11434/v1",
        requires_api_key=False,
        supports_native_tools=True,
        input_per_1m=0.0,
        output_per_1m=0.0,
        billing_model=BillingModel.SUBSCRIPTION_QUOTA,
    ),
}

_KEYWORD_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("anthropic", re.compile(r"claude")),
    ("openai", re.compile(r"(^|/)(gpt|chatgpt|o1|o3|o4)(-|$)")),
    ("google", re.compile(r"gemini")),
    ("mistral", re.compile(r"mistral|mixtral|codestral")),
    ("cohere", re.compile(r"(^|/)command")),
    ("perplexity", re.compile(r"sonar")),
    ("moonshot", re.compile(r"moonshot|kimi")),
)


def normalize_provider(name: str) -> str:
    return name.strip().lower()


def infer_provider(*, model: str, stored_provider: str) -> str:
    """Pick the provider that should serve `model`.

    Order:
    - explicit routing prefix (`openrouter/...`, `groq/...`);
    - a stored aggregator provider keeps the call (it hosts other vendors' models);
    - model-name keywords (`claude` -> anthropic, `gpt-` -> openai, ...);
    - the stored provider.
    """

    stored = normalize_provider(stored_provider)
    normalized_model = model.strip().lower()

    if "/" in normalized_model:
        prefix = normalized_model.split("/", 1)[0]
        spec = PROVIDERS.get(prefix)
        if spec is not None and spec.model_prefix is not None:
            return prefix

    stored_spec = PROVIDERS.get(stored)
    if stored_spec is not None and stored_spec.aggregator:
        return stored

    for provider, pattern in _KEYWORD_RULES:
        if pattern.search(normalized_model):
            return provider
    return stored


def get_provider_spec(name: str, *, ollama_base_url: str | None = None) -> ProviderSpec:
    """Look up a provider, raising `UnsupportedProviderError` when absent."""

    spec = PROVIDERS.get(normalize_provider(name))
    if spec is None:
        raise UnsupportedProviderError(f'Provider "{name}" is not yet supported.')
    if spec.name == "ollama" and ollama_base_url:
        return replace(spec, base_url=ollama_base_url.rstrip("/"))
    return spec


def strip_model_prefix(spec: ProviderSpec, model: str) -> str:
    """Drop the provider routing prefix the vendor API does not expect."""

    if spec.model_prefix and model.lower().startswith(spec.model_prefix):
        return model[len(spec.model_prefix) :]
    return model
