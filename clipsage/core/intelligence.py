"""Summarization, tagging and embedding capabilities.

Each capability is an independent interface with one LiteLLM-backed
implementation and one local fallback. The pipeline composes them with
timeouts; nothing here retries.
"""

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional, Protocol

from litellm import Router

from clipsage.config import Settings
from clipsage.core.ai_detector import AIDetector, litellm_params
from clipsage.core.errors import EnrichmentError, EnrichmentUnavailable
from clipsage.models.schemas import normalize_tags

logger = logging.getLogger(__name__)

EMBEDDING_GROUP = "clipsage-embedding"
CHAT_GROUP = "clipsage-chat"

SUMMARY_PROMPT = "Summarize the following text in one short sentence:\n\n{content}"

TAGS_PROMPT = """Analyze this content and generate 3-5 relevant tags that capture its main topics and themes.

Content: {content}

Return only a JSON array of strings, nothing else. Example: ["python", "web development", "tutorial"]

Tags:"""


class Summarizer(Protocol):
    async def summarize(self, content: str) -> str: ...


class Tagger(Protocol):
    async def tag(self, content: str) -> List[str]: ...


class Embedder(Protocol):
    model_id: str

    async def embed(self, text: str) -> List[float]: ...


# ---------- local fallbacks ----------

_SENTENCE_END = re.compile(r"(.+?[.!?])(?:\s|$)")


def heuristic_summary(content: str, max_chars: int = 80) -> str:
    """First sentence of the first non-blank line, cut to ``max_chars``."""
    text = content.strip()
    first_line = next((line.strip() for line in text.splitlines() if line.strip()), text)

    match = _SENTENCE_END.match(first_line)
    summary = match.group(1) if match else first_line

    if len(summary) > max_chars:
        summary = summary[: max_chars - 3].rstrip() + "..."
    return summary


_TAG_RULES = {
    # Programming languages
    "python": [r"\bdef \w+\(", r"^\s*import \w+", r"\bpip install\b", r"\.py\b", r"\bpython\b"],
    "javascript": [r"\bfunction\s*\w*\(", r"\bconst \w+ =", r"\blet \w+ =", r"\bnpm\b", r"\.js\b", r"=>"],
    "typescript": [r"\binterface \w+ \{", r"\.tsx?\b", r"\btypescript\b"],
    "rust": [r"\bfn \w+\(", r"\blet mut\b", r"\bcargo\b", r"\.rs\b"],
    "go": [r"\bfunc \w+\(", r"^package \w+", r"\bgolang\b"],
    "c++": [r"#include\s*<", r"\bstd::", r"\bcout\b"],
    "shell": [r"^\s*\$ ", r"\bsudo\b", r"^#!/bin/(ba)?sh"],
    # Technologies
    "docker": [r"\bdocker(file)?\b", r"\bcontainer\b"],
    "kubernetes": [r"\bkubernetes\b", r"\bkubectl\b", r"\bk8s\b"],
    "git": [r"\bgit (commit|push|pull|clone|checkout|rebase|merge)\b", r"\bgithub\b", r"\bgitlab\b"],
    "database": [r"\bselect .+ from\b", r"\binsert into\b", r"\b(postgres(ql)?|mysql|sqlite|mongodb)\b"],
    "cloud": [r"\b(aws|azure|gcp)\b"],
    # Content types
    "url": [r"https?://", r"\bwww\.\w+"],
    "email": [r"\b[\w.+-]+@[\w-]+\.[\w.]+\b"],
    "json": [r"^\s*[\[{]\s*\"\w+\"\s*:"],
    "tutorial": [r"\btutorial\b", r"\bhow to\b", r"\bguide\b"],
    "troubleshooting": [r"\berror\b", r"\bexception\b", r"\btraceback\b", r"\bbug\b"],
    "configuration": [r"\bconfig(uration)?\b", r"\bsetup\b", r"\binstall\b"],
}

_COMPILED_RULES = {
    tag: [re.compile(pattern, re.IGNORECASE | re.MULTILINE) for pattern in patterns]
    for tag, patterns in _TAG_RULES.items()
}

_CODE_TAGS = {"python", "javascript", "typescript", "rust", "go", "c++", "shell"}


def heuristic_tags(content: str, max_tags: int = 5) -> List[str]:
    """Rule-based tags. May well be empty for plain prose."""
    tags = [
        tag
        for tag, patterns in _COMPILED_RULES.items()
        if any(pattern.search(content) for pattern in patterns)
    ]

    if _CODE_TAGS.intersection(tags):
        tags.append("code")
    if len(content) > 200:
        tags.append("long-text")

    return normalize_tags(tags)[:max_tags]


def _extract_tags_from_text(text: str) -> List[str]:
    """Extract tags from a malformed model response."""
    tags = [tag.strip().lower() for tag in re.findall(r'"([^"]+)"', text)]

    if not tags:
        clean_text = re.sub(r"[^\w\s,-]", "", text)
        tags = [
            word.strip().lower()
            for word in clean_text.split(",")
            if 2 < len(word.strip()) < 30
        ]

    return tags[:5]


# ---------- LiteLLM-backed capabilities ----------


class LiteLLMSummarizer:
    """One-sentence summaries from the routed chat model."""

    def __init__(self, router: Optional[Router]):
        self.router = router

    async def summarize(self, content: str) -> str:
        if self.router is None:
            raise EnrichmentUnavailable("summarize", "no chat model configured")

        response = await self.router.acompletion(
            model=CHAT_GROUP,
            messages=[{"role": "user", "content": SUMMARY_PROMPT.format(content=content[:4000])}],
            temperature=0.2,
            max_tokens=60,
        )

        summary = (response.choices[0].message.content or "").strip()
        summary = next((line.strip() for line in summary.splitlines() if line.strip()), "")
        if not summary:
            raise EnrichmentError("summarize", "empty response")
        return summary[:200]


class LiteLLMTagger:
    """Topical tags from the routed chat model."""

    def __init__(self, router: Optional[Router]):
        self.router = router

    async def tag(self, content: str) -> List[str]:
        if self.router is None:
            raise EnrichmentUnavailable("tag", "no chat model configured")

        response = await self.router.acompletion(
            model=CHAT_GROUP,
            messages=[{"role": "user", "content": TAGS_PROMPT.format(content=content[:1000])}],
            temperature=0.3,
            max_tokens=100,
        )

        tags_text = (response.choices[0].message.content or "").strip()

        try:
            tags = json.loads(tags_text)
            if isinstance(tags, list):
                return normalize_tags([str(tag) for tag in tags[:5]])
        except json.JSONDecodeError:
            pass

        return normalize_tags(_extract_tags_from_text(tags_text))


class LiteLLMEmbedder:
    """Embeddings from the routed embedding model."""

    def __init__(self, router: Optional[Router], model: Optional[str], dimension: int):
        self.router = router
        self.model = model
        self.dimension = dimension

    @property
    def model_id(self) -> str:
        """Version marker stored with every embedding."""
        return f"{self.model or 'none'}@{self.dimension}"

    async def embed(self, text: str) -> List[float]:
        if self.router is None or not self.model:
            raise EnrichmentUnavailable("embed", "no embedding model configured")

        response = await self.router.aembedding(model=EMBEDDING_GROUP, input=[text[:8000]])

        item = response.data[0]
        vector = item["embedding"] if isinstance(item, dict) else item.embedding
        vector = [float(x) for x in vector]
        if len(vector) != self.dimension:
            raise EnrichmentError(
                "embed", f"model returned {len(vector)} dimensions, expected {self.dimension}"
            )
        return vector


class Intelligence:
    """LiteLLM Router wired from settings and detected providers."""

    def __init__(
        self,
        router: Optional[Router] = None,
        embedding_model: Optional[str] = None,
        chat_model: Optional[str] = None,
        embedding_dim: int = 768,
    ):
        self.router = router
        self.embedding_model = embedding_model
        self.chat_model = chat_model

        chat_router = router if chat_model else None
        embed_router = router if embedding_model else None
        self.summarizer = LiteLLMSummarizer(chat_router)
        self.tagger = LiteLLMTagger(chat_router)
        self.embedder = LiteLLMEmbedder(embed_router, embedding_model, embedding_dim)

    @classmethod
    async def create(cls, settings: Settings) -> "Intelligence":
        """Build the router from explicit models, filling gaps by detection."""
        model_list: List[Dict[str, Any]] = []
        embedding_model = settings.embedding_model
        chat_model = settings.chat_model

        if embedding_model:
            model_list.append(_deployment(EMBEDDING_GROUP, embedding_model, settings.api_base))
        if chat_model:
            model_list.append(_deployment(CHAT_GROUP, chat_model, settings.api_base))

        if settings.auto_detect and not (embedding_model and chat_model):
            detector = AIDetector()
            await detector.detect_all_providers()
            logger.info(detector.get_summary())
            best = detector.get_best_providers()

            if not embedding_model and best["embedding"]:
                provider = best["embedding"]
                params = litellm_params(provider, provider.embedding_models[0])
                embedding_model = params["model"]
                model_list.append({"model_name": EMBEDDING_GROUP, "litellm_params": params})

            if not chat_model and best["chat"]:
                provider = best["chat"]
                params = litellm_params(provider, provider.chat_models[0])
                chat_model = params["model"]
                model_list.append({"model_name": CHAT_GROUP, "litellm_params": params})

        if not model_list:
            logger.warning("No AI models configured or detected, using local fallbacks")
            return cls(embedding_dim=settings.embedding_dim)

        router = Router(
            model_list=model_list,
            routing_strategy=os.getenv("ROUTING_STRATEGY", "simple-shuffle"),
            num_retries=int(os.getenv("MAX_RETRIES", "0")),
            timeout=float(os.getenv("REQUEST_TIMEOUT", "30")),
            cooldown_time=float(os.getenv("COOLDOWN_TIME", "60")),
        )
        logger.info(
            f"Initialized router: embedding={embedding_model or '-'} chat={chat_model or '-'}"
        )
        return cls(router, embedding_model, chat_model, settings.embedding_dim)

    def get_provider_status(self) -> Dict[str, Any]:
        """Current capability configuration."""
        return {
            "mode": "router" if self.router else "fallback",
            "embedding_model": self.embedding_model,
            "embedding_version": self.embedder.model_id,
            "chat_model": self.chat_model,
        }


def _deployment(group: str, model: str, api_base: Optional[str]) -> Dict[str, Any]:
    params: Dict[str, Any] = {"model": model}
    if api_base:
        params["api_base"] = api_base
    elif model.startswith("ollama/"):
        params["api_base"] = os.getenv("OLLAMA_API_BASE", "http://localhost:11434")
    return {"model_name": group, "litellm_params": params}
