"""Detection of reachable model providers for enrichment."""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

EMBEDDING_HINTS = ("embed", "embedding", "text-embedding", "bge", "e5-")


@dataclass
class AIProvider:
    """A model provider and the models it serves."""

    name: str
    type: str  # "local" or "cloud"
    api_base: str
    api_key: Optional[str] = None
    embedding_models: List[str] = field(default_factory=list)
    chat_models: List[str] = field(default_factory=list)
    available: bool = False
    latency_ms: Optional[float] = None


LOCAL_PROVIDERS = [
    {
        "name": "ollama",
        "env": "OLLAMA_API_BASE",
        "api_base": "http://localhost:11434",
        "models_endpoint": "/api/tags",
    },
    {
        "name": "lmstudio",
        "env": "LMSTUDIO_API_BASE",
        "api_base": "http://localhost:1234",
        "models_endpoint": "/v1/models",
    },
    {
        "name": "vllm",
        "env": "VLLM_API_BASE",
        "api_base": "http://localhost:8000",
        "models_endpoint": "/v1/models",
    },
]

CLOUD_PROVIDERS = [
    {
        "name": "openai",
        "api_key_env": "OPENAI_API_KEY",
        "api_base": "https://api.openai.com/v1",
        "embedding_models": ["text-embedding-3-small"],
        "chat_models": ["gpt-4o-mini"],
    },
    {
        "name": "anthropic",
        "api_key_env": "ANTHROPIC_API_KEY",
        "api_base": "https://api.anthropic.com",
        "embedding_models": [],
        "chat_models": ["claude-3-5-haiku-latest"],
    },
    {
        "name": "cohere",
        "api_key_env": "COHERE_API_KEY",
        "api_base": "https://api.cohere.ai",
        "embedding_models": ["embed-english-v3.0"],
        "chat_models": ["command-r"],
    },
    {
        "name": "groq",
        "api_key_env": "GROQ_API_KEY",
        "api_base": "https://api.groq.com/openai/v1",
        "embedding_models": [],
        "chat_models": ["llama-3.1-8b-instant"],
    },
]


class AIDetector:
    """Probes local model servers and checks cloud credentials."""

    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout
        self.detected_providers: List[AIProvider] = []

    async def detect_all_providers(self) -> List[AIProvider]:
        """Detect all available AI providers (local and cloud)."""
        results = await asyncio.gather(
            *(self._test_local_provider(config) for config in LOCAL_PROVIDERS),
            return_exceptions=True,
        )
        providers = [
            result
            for result in results
            if isinstance(result, AIProvider) and result.available
        ]
        providers.extend(self._detect_cloud_providers())

        self.detected_providers = providers
        return providers

    async def _test_local_provider(self, config: Dict[str, str]) -> AIProvider:
        """Test if a local provider is available."""
        api_base = os.getenv(config["env"], config["api_base"]).rstrip("/")
        provider = AIProvider(name=config["name"], type="local", api_base=api_base)

        try:
            loop = asyncio.get_running_loop()
            start_time = loop.time()

            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{api_base}{config['models_endpoint']}")

            if response.status_code == 200:
                embedding_models, chat_models = self._parse_models(
                    response.json(), config["name"]
                )
                provider.embedding_models = embedding_models
                provider.chat_models = chat_models
                provider.available = True
                provider.latency_ms = (loop.time() - start_time) * 1000
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Provider {config['name']} at {api_base} not available: {e}")

        return provider

    def _parse_models(
        self, models_data: Dict[str, Any], provider_name: str
    ) -> Tuple[List[str], List[str]]:
        """Split a provider's model listing into embedding and chat models."""
        if provider_name == "ollama":
            names = [model.get("name", "") for model in models_data.get("models", [])]
        else:
            names = [model.get("id", "") for model in models_data.get("data", [])]

        embedding_models = []
        chat_models = []
        for name in filter(None, names):
            if any(hint in name.lower() for hint in EMBEDDING_HINTS):
                embedding_models.append(name)
            else:
                chat_models.append(name)

        return embedding_models, chat_models

    def _detect_cloud_providers(self) -> List[AIProvider]:
        """Cloud providers count as available when their API key is set."""
        providers = []
        for config in CLOUD_PROVIDERS:
            api_key = os.getenv(config["api_key_env"])
            if not api_key:
                continue
            providers.append(
                AIProvider(
                    name=config["name"],
                    type="cloud",
                    api_base=config["api_base"],
                    api_key=api_key,
                    embedding_models=list(config["embedding_models"]),
                    chat_models=list(config["chat_models"]),
                    available=True,
                )
            )
        return providers

    def get_best_providers(self) -> Dict[str, Optional[AIProvider]]:
        """Pick embedding and chat providers, local before cloud, fastest first."""

        def rank(provider: AIProvider):
            return (provider.type != "local", provider.latency_ms or float("inf"))

        available = sorted(
            (p for p in self.detected_providers if p.available), key=rank
        )

        return {
            "embedding": next((p for p in available if p.embedding_models), None),
            "chat": next((p for p in available if p.chat_models), None),
        }

    def get_summary(self) -> str:
        """Human-readable summary of detected providers."""
        available = [p for p in self.detected_providers if p.available]
        if not available:
            return "No AI providers available, enrichment uses local fallbacks."

        lines = [f"Detected {len(available)} AI providers:"]
        for provider in available:
            latency = f" ({provider.latency_ms:.0f}ms)" if provider.latency_ms else ""
            lines.append(
                f"  {provider.name} [{provider.type}]{latency}: "
                f"{len(provider.embedding_models)} embedding, "
                f"{len(provider.chat_models)} chat models"
            )
        return "\n".join(lines)


def litellm_params(provider: AIProvider, model: str) -> Dict[str, Any]:
    """LiteLLM deployment parameters for a provider's model."""
    if provider.type == "local":
        if provider.name == "ollama":
            return {"model": f"ollama/{model}", "api_base": provider.api_base}
        # LM Studio, vLLM and other OpenAI-compatible servers
        return {
            "model": f"openai/{model}",
            "api_base": f"{provider.api_base}/v1",
            "api_key": "dummy",
        }

    if provider.name in ("openai", "anthropic", "cohere", "groq"):
        return {"model": f"{provider.name}/{model}", "api_key": provider.api_key}

    return {
        "model": f"openai/{model}",
        "api_base": provider.api_base,
        "api_key": provider.api_key,
    }
