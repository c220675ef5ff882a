"""Rubric-based relevance judging of retrieved implementations.

The judge asks a (possibly different) model to score each candidate against
five criteria and parses the freeform "Criterion: N" answer. A candidate whose
judgment cannot be obtained gets neutral scores instead of failing the batch.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence

from lcr.errors import ModelServiceError
from lcr.executor import ModelExecutor, strip_thinking
from lcr.types import Implementation, Judgment, ModelUsage, PipelineConfig

logger = logging.getLogger(__name__)


RUBRIC: tuple[str, ...] = (
    "Functionality",
    "Readability",
    "Best Practices",
    "Performance",
    "Robustness",
)
MIN_SCORE = 1
MAX_SCORE = 5
NEUTRAL_SCORE = 3
DEFAULT_JUSTIFICATION = "Failed to get a valid judgment after multiple attempts."

_LIST_MARKER_RE = re.compile(r"^\s*(?:[-•]\s+|\d+[.)]\s+)")
_CRITERION_RE = re.compile(
    r"^(?P<label>[A-Za-z][A-Za-z0-9 _&-]*?)\s*:\s*(?P<score>\d+)(?:\s*/\s*\d+)?(?P<rest>.*)$"
)
_JUSTIFICATION_RE = re.compile(r"^justification\s*:\s*(?P<text>.*)$", re.IGNORECASE)
# Aggregate lines such as "Total: 18" are not criteria and not justification text.
_AGGREGATE_RE = re.compile(r"^(?:total|overall|sum)\b", re.IGNORECASE)


def default_judgment() -> Judgment:
    return Judgment(
        scores={name: NEUTRAL_SCORE for name in RUBRIC},
        justification=DEFAULT_JUSTIFICATION,
        defaulted=True,
    )


def _clamp_score(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def _clean_rest(rest: str) -> str:
    text = rest.strip().lstrip("-–—:.,;)( ").strip()
    m = _JUSTIFICATION_RE.match(text)
    if m:
        text = m.group("text").strip()
    return text


def parse_judgment(text: str) -> Judgment:
    """Single pass over the lines, pairing criteria with scores and justifications.

    A criterion line is ``Label: N`` or ``Label: N/M`` (the numerator counts).
    Text after the score, ``Justification:`` lines and any other free text attach
    to the most recent criterion until the next one starts.

    <think> blocks are dropped first, so raw model transcripts parse too.
    """
    scores: dict[str, int] = {}
    parts: list[str] = []
    current: list[str] | None = None

    cleaned = strip_thinking(text or "")
    for raw_line in cleaned.splitlines():
        line = _LIST_MARKER_RE.sub("", raw_line.replace("*", "")).strip()
        if not line:
            continue

        m = _CRITERION_RE.match(line)
        if m and _AGGREGATE_RE.match(m.group("label")):
            continue
        if m and not _JUSTIFICATION_RE.match(line):
            if current:
                parts.append(" ".join(current))
            label = m.group("label").strip()
            scores[label] = _clamp_score(int(m.group("score")))
            current = []
            rest = _clean_rest(m.group("rest"))
            if rest:
                current.append(rest)
            continue

        if current is None:
            continue
        j = _JUSTIFICATION_RE.match(line)
        piece = j.group("text").strip() if j else line
        if piece:
            current.append(piece)

    if current:
        parts.append(" ".join(current))

    return Judgment(scores=scores, justification=" ".join(parts).strip())


def is_accepted(judgment: Judgment, threshold: int) -> bool:
    return judgment.total_score >= int(threshold)


def build_judge_prompt(query: str, content: str) -> str:
    return (
        "Given the following query and output, evaluate the relevance and quality of the "
        "retrieved code based on these criteria:\n\n"
        "1. Functionality: Does the output implement the required functionality? Judge in "
        "terms of overall usefulness, even if partly unfunctional (1-5)\n"
        "2. Readability: Is the code readable and maintainable? (1-5)\n"
        "3. Best Practices: Does the output adhere to common coding standards and best "
        "practices? (1-5)\n"
        "4. Performance: Is the code efficient and optimized for performance? (1-5)\n"
        "5. Robustness: Does the code handle edge cases and potential errors gracefully? (1-5)\n\n"
        "Provide a score for each criterion (1-5) and a brief justification for your scores. "
        "Do not output asterisks at all, no * or **.\n\n"
        f"Query: {query}\n\n"
        f"Output: {content}\n\n"
        "Example format:\n"
        "Functionality: 5\n"
        "Justification: The code clearly implements the required functionality.\n"
        "Readability: 4\n"
        "Justification: The code is mostly readable but lacks some comments.\n"
        "Best Practices: 4\n"
        "Justification: The code follows common practices but could be improved with better "
        "naming conventions.\n"
        "Performance: 3\n"
        "Justification: The code is efficient but could be optimized further.\n"
        "Robustness: 3\n"
        "Justification: The code handles basic edge cases but lacks extensive error handling.\n"
    )


class RelevanceJudge:
    """Scores implementations against the rubric with the judge model."""

    def __init__(self, config: PipelineConfig, executor: ModelExecutor | None = None):
        self.config = config
        self.model = config.judge_model or config.script_model
        self.executor = executor or ModelExecutor(self.model)

    async def score(
        self, implementation: Implementation, query: str, usage: ModelUsage | None = None
    ) -> Judgment:
        """Judge one implementation; never raises (apart from cancellation)."""
        prompt = build_judge_prompt(query, implementation.content)
        max_attempts = max(1, int(self.config.max_judge_attempts))
        min_criteria = int(self.config.min_judge_criteria)

        for attempt in range(1, max_attempts + 1):
            try:
                result = await self.executor.complete(prompt, model=self.model.name)
            except ModelServiceError as e:
                logger.warning(
                    "judge: system %s attempt %d/%d failed: %s",
                    implementation.id,
                    attempt,
                    max_attempts,
                    e,
                )
                continue
            except Exception:
                logger.exception(
                    "judge: unexpected failure for system %s (attempt %d/%d)",
                    implementation.id,
                    attempt,
                    max_attempts,
                )
                continue

            if usage is not None:
                usage.add(result)
            judgment = parse_judgment(result.output)
            if len(judgment.scores) >= min_criteria:
                logger.info(
                    "judge: system %s total=%d %s",
                    implementation.id,
                    judgment.total_score,
                    judgment.scores,
                )
                return judgment

            logger.info(
                "judge: system %s attempt %d/%d recognised %d criteria; retrying",
                implementation.id,
                attempt,
                max_attempts,
                len(judgment.scores),
            )

        logger.warning("judge: system %s falling back to neutral scores", implementation.id)
        return default_judgment()

    async def judge_batch(
        self,
        implementations: Sequence[Implementation],
        query: str,
        usage: ModelUsage | None = None,
    ) -> list[Judgment]:
        """Score every implementation; results line up with the input order."""
        limit = max(1, int(self.config.judge_concurrency))
        if limit == 1:
            return [await self.score(impl, query, usage) for impl in implementations]

        sem = asyncio.Semaphore(limit)

        async def _one(impl: Implementation) -> Judgment:
            async with sem:
                return await self.score(impl, query, usage)

        return list(await asyncio.gather(*(_one(impl) for impl in implementations)))


__all__ = [
    "RUBRIC",
    "RelevanceJudge",
    "build_judge_prompt",
    "default_judgment",
    "is_accepted",
    "parse_judgment",
]
