"""StageAgent: one pipeline stage wrapped around a ``generate`` call.

``run`` never raises for a failed generation: the failure is captured on
``StageResult.error`` so the pipeline can still put the (empty) result in
front of a reviewer.  Only ``asyncio.CancelledError`` propagates.
"""

from __future__ import annotations

import re
import time
from typing import Any

from lodestar.agents.models import TextGenerator, load_prompt
from lodestar.core.logging import get_logger
from lodestar.core.state import StageResult, StageStatus, utcnow

logger = get_logger("agents.base")

TRUNCATION_MARKER = "[... output truncated]"

# Words dropped below the cap to make room for the marker.
_MARKER_ALLOWANCE = 10

_DISPLAY_GUIDELINES = """

IMPORTANT: Your response will be shown to a human reviewer and passed on to later stages.
1. Focus on the most relevant information and insights.
2. Be concise and clear; stay under {cap} words.
3. Do not include token counts, usage statistics or other metadata.
4. Structure the response with short labelled sections where it helps."""

# Artefacts some providers leak into the text.
_CLEANUP_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r'"?(?:prompt|completion|total)_tokens"?.*?[,}]'), ""),
    (re.compile(r'"?usage"?\s*:\s*\{.*?\}', re.DOTALL), ""),
    (re.compile(r"^\s*(?:Tokens used|Total tokens|Processing time):.*$", re.MULTILINE), ""),
    (re.compile(r"^```[a-zA-Z]*\s*$", re.MULTILINE), ""),
)


def clean_output(text: str) -> str:
    """Strip token statistics and markdown code fences from *text*."""
    cleaned = text
    for pattern, replacement in _CLEANUP_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def truncate_words(text: str, cap: int) -> str:
    """Cap *text* at *cap* words.

    Longer text keeps its first ``cap - 10`` words followed by
    :data:`TRUNCATION_MARKER`.  Text within the cap is returned unchanged.
    """
    words = text.split()
    if len(words) <= cap:
        return text
    keep = words[: max(cap - _MARKER_ALLOWANCE, 0)]
    return " ".join(keep + [TRUNCATION_MARKER])


class StageAgent:
    """Runs one stage and remembers the outcome of its latest run.

    Args:
        stage_name:  Name used in history and on the event channel.
        description: One-line role description, prepended to the prompt.
        generate:    The text-generation coroutine.
        prompt:      System prompt; defaults to ``prompts/<stage_name>.txt``.
        word_cap:    Word limit for the human-facing copy.
    """

    def __init__(
        self,
        stage_name: str,
        description: str,
        generate: TextGenerator,
        prompt: str | None = None,
        word_cap: int = 250,
    ) -> None:
        self.stage_name = str(stage_name)
        self.description = description
        self.word_cap = word_cap
        self._generate = generate
        self._prompt = prompt
        self._last: StageResult | None = None

    @property
    def prompt(self) -> str:
        if self._prompt is None:
            self._prompt = load_prompt(self.stage_name)
        return self._prompt

    @property
    def last_result(self) -> StageResult | None:
        return self._last

    def build_payload(self, data: Any) -> Any:
        """Shape *data* for the model; stages override this."""
        return data

    def system_prompt(self, prompt: str | None = None) -> str:
        body = prompt if prompt is not None else self.prompt
        return f"You are the {self.stage_name} stage: {self.description}\n\n{body}" + \
            _DISPLAY_GUIDELINES.format(cap=self.word_cap)

    async def run(self, data: Any, prompt: str | None = None, as_stage: str | None = None) -> StageResult:
        """Execute the stage.  Never raises for generation failures.

        *as_stage* records the result under another name (the supervisor runs
        several kinds of call through one agent).
        """
        stage_name = str(as_stage or self.stage_name)
        started_at = utcnow()
        t0 = time.perf_counter()
        output: str | None = None
        error: str | None = None

        logger.info("%s starting", stage_name)
        try:
            payload = self.build_payload(data)
            raw = await self._generate(self.system_prompt(prompt), payload)
            if not raw or not raw.strip():
                error = "Generation returned no content"
            else:
                output = raw
        except Exception as exc:
            logger.error("%s failed: %s", stage_name, exc, exc_info=True)
            error = str(exc) or exc.__class__.__name__

        duration_ms = int((time.perf_counter() - t0) * 1000)
        result = StageResult(
            stage_name=stage_name,
            processed=error is None,
            output=output,
            truncated_output=truncate_words(clean_output(output), self.word_cap) if output else None,
            error=error,
            started_at=started_at,
            duration_ms=duration_ms,
        )
        self._last = result
        logger.info("%s finished in %dms (ok=%s)", stage_name, duration_ms, result.processed)
        return result

    def reset(self) -> None:
        """Forget the last run so the instance can serve a new session."""
        self._last = None

    def status(self) -> StageStatus:
        last = self._last
        if last is None:
            return StageStatus(stage_name=self.stage_name)
        return StageStatus(
            stage_name=self.stage_name,
            processed=last.processed,
            has_error=last.error is not None,
            duration_ms=last.duration_ms,
            last_run_at=last.started_at,
        )
