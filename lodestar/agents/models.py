"""LLM model configuration and the ``generate`` call every stage goes through.

Provider routing is done via model name prefix:
  - "ollama:<model>"  → local Ollama  (e.g. "ollama:llama3.1:70b")
  - "claude-*"        → Anthropic API
  - anything else     → OpenAI API   (e.g. "gpt-4o", "gpt-4o-mini")

Set STAGE_MODEL and SUPERVISOR_MODEL in .env to choose freely.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from lodestar.core.config import get_settings
from lodestar.core.logging import get_logger

logger = get_logger("agents.models")

ModelRole = Literal["stage", "supervisor"]

# generate(prompt, payload) -> text.  Fallible; failures propagate to the caller.
TextGenerator = Callable[[str, Any], Awaitable[str]]

PROMPTS_DIR = Path(__file__).parent / "prompts"


# ---------------------------------------------------------------------------
# Provider detection
# ---------------------------------------------------------------------------

def _is_ollama_model(model_name: str) -> bool:
    return model_name.lower().startswith("ollama:")


def _is_anthropic_model(model_name: str) -> bool:
    return "claude" in model_name.lower()


# ---------------------------------------------------------------------------
# LLM constructors
# ---------------------------------------------------------------------------

def _make_ollama(model: str, base_url: str, temperature: float) -> BaseChatModel:
    """Create a ChatOllama instance. langchain-ollama must be installed."""
    try:
        from langchain_ollama import ChatOllama  # type: ignore[import-untyped]
    except ImportError as exc:
        raise ImportError(
            "langchain-ollama is not installed. Run: pip install 'lodestar[ollama]'"
        ) from exc

    bare_model = model[len("ollama:"):]
    logger.info("Using Ollama model '%s' at %s", bare_model, base_url)
    return ChatOllama(model=bare_model, base_url=base_url, temperature=temperature)


def _make_anthropic(model: str, api_key: str, temperature: float, max_tokens: int) -> BaseChatModel:
    from langchain_anthropic import ChatAnthropic

    logger.info("Using Anthropic model '%s'", model)
    return ChatAnthropic(model=model, api_key=api_key, temperature=temperature, max_tokens=max_tokens)


def _make_openai(model: str, api_key: str, temperature: float, max_tokens: int) -> BaseChatModel:
    from langchain_openai import ChatOpenAI

    logger.info("Using OpenAI model '%s'", model)
    return ChatOpenAI(model=model, api_key=api_key, temperature=temperature, max_tokens=max_tokens)


def _require_key(role: ModelRole, model: str, value: str, env_name: str) -> str:
    key = (value or "").strip()
    if key:
        return key
    raise ValueError(
        f"Missing {env_name} for role '{role}' with model '{model}'. "
        f"Set {env_name} in .env or switch provider."
    )


def _build_for_model(
    role: ModelRole,
    model: str,
    openai_api_key: str,
    anthropic_api_key: str,
    ollama_base_url: str,
    temperature: float,
    max_tokens: int = 2048,
) -> BaseChatModel:
    """Build an LLM for *any* supported provider based on the model string."""
    if _is_ollama_model(model):
        return _make_ollama(model, base_url=ollama_base_url, temperature=temperature)

    if _is_anthropic_model(model):
        key = _require_key(role, model, anthropic_api_key, "ANTHROPIC_API_KEY")
        return _make_anthropic(model, key, temperature=temperature, max_tokens=max_tokens)

    key = _require_key(role, model, openai_api_key, "OPENAI_API_KEY")
    return _make_openai(model, key, temperature=temperature, max_tokens=max_tokens)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_llm(role: ModelRole) -> BaseChatModel:
    """Create an LLM instance for the given role."""
    settings = get_settings()
    kwargs = dict(
        openai_api_key=settings.openai_api_key,
        anthropic_api_key=settings.anthropic_api_key,
        ollama_base_url=settings.ollama_base_url,
    )
    if role == "stage":
        return _build_for_model(role=role, model=settings.stage_model,
                                temperature=settings.stage_temperature, **kwargs)
    if role == "supervisor":
        return _build_for_model(role=role, model=settings.supervisor_model,
                                temperature=0.2, max_tokens=4096, **kwargs)
    raise ValueError(f"Unknown model role: {role}")


def render_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, indent=2, default=str, ensure_ascii=False)


def _content_text(content: Any) -> str:
    """Flatten a chat message's content (str or list of content blocks) to text."""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def llm_generator(role: ModelRole) -> TextGenerator:
    """Return a ``generate(prompt, payload)`` coroutine backed by the role's LLM.

    The model is built lazily on first use, so a missing API key surfaces as
    a failed stage rather than a startup crash.
    """
    llm: BaseChatModel | None = None

    async def generate(prompt: str, payload: Any) -> str:
        nonlocal llm
        if llm is None:
            llm = get_llm(role)
        messages = [SystemMessage(content=prompt), HumanMessage(content=render_payload(payload))]
        response = await llm.ainvoke(messages)
        return _content_text(response.content)

    return generate


def load_prompt(name: str) -> str:
    """Load the system prompt ``prompts/<name>.txt``."""
    prompt_file = PROMPTS_DIR / f"{name}.txt"
    if not prompt_file.exists():
        raise FileNotFoundError(f"System prompt not found: {prompt_file}")
    return prompt_file.read_text(encoding="utf-8")
