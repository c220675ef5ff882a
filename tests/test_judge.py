from __future__ import annotations

import asyncio

import pytest

from lcr.errors import ModelServiceError
from lcr.judge import (
    RUBRIC,
    RelevanceJudge,
    build_judge_prompt,
    default_judgment,
    is_accepted,
    parse_judgment,
)
from lcr.types import ExecutionResult, Implementation, Judgment, PipelineConfig

FULL_ANSWER = """Functionality: 5
Justification: Encodes exactly as asked.
Readability: 4
Justification: Clear names.
Best Practices: 4
Performance: 3 - Allocates per call.
Robustness: 2
Justification: No null checks.
"""


class _StubExecutor:
    def __init__(self, outputs: list):
        self.outputs = list(outputs)
        self.calls = 0

    async def complete(self, prompt: str, *, model: str | None = None) -> ExecutionResult:
        self.calls += 1
        out = self.outputs.pop(0)
        if isinstance(out, BaseException):
            raise out
        return ExecutionResult(output=out, model=model or "stub")


def _mk_judge(outputs: list, **cfg) -> tuple[RelevanceJudge, _StubExecutor]:
    stub = _StubExecutor(outputs)
    return RelevanceJudge(PipelineConfig(**cfg), executor=stub), stub


def _mk_impl(impl_id="7", content="class Base64 {}") -> Implementation:
    return Implementation(id=impl_id, content=content)


def test_parse_judgment_reads_scores_and_justifications() -> None:
    j = parse_judgment(FULL_ANSWER)
    assert j.scores == {
        "Functionality": 5,
        "Readability": 4,
        "Best Practices": 4,
        "Performance": 3,
        "Robustness": 2,
    }
    assert j.total_score == 18
    assert j.justification == (
        "Encodes exactly as asked. Clear names. Allocates per call. No null checks."
    )
    assert not j.defaulted


def test_parse_judgment_takes_numerator_of_fraction() -> None:
    j = parse_judgment("Functionality: 4/5\nReadability: 3 / 5\nRobustness: 5/10")
    assert j.scores == {"Functionality": 4, "Readability": 3, "Robustness": 5}


def test_parse_judgment_strips_markdown_and_list_markers() -> None:
    text = "1. **Functionality**: 5\n- **Readability:** 4\n* Performance: 2\n"
    j = parse_judgment(text)
    assert j.scores == {"Functionality": 5, "Readability": 4, "Performance": 2}


def test_parse_judgment_clamps_out_of_range_scores() -> None:
    j = parse_judgment("Functionality: 9\nReadability: 0\nRobustness: 3")
    assert j.scores == {"Functionality": 5, "Readability": 1, "Robustness": 3}


def test_parse_judgment_ignores_totals_and_preamble() -> None:
    text = (
        "Query: base64 encode\nScoring follows.\n"
        "Functionality: 5\nTotal: 18\nOverall Score: 18/25"
    )
    j = parse_judgment(text)
    assert j.scores == {"Functionality": 5}
    assert j.justification == ""


def test_parse_judgment_drops_thinking_block() -> None:
    j = parse_judgment("<think>Functionality: 1 looks weak?</think>\n" + FULL_ANSWER)
    assert j.scores["Functionality"] == 5
    assert "looks weak" not in j.justification


def test_default_judgment_is_neutral_and_flagged() -> None:
    j = default_judgment()
    assert set(j.scores) == set(RUBRIC)
    assert all(v == 3 for v in j.scores.values())
    assert j.total_score == 15
    assert j.defaulted


def test_threshold_boundary() -> None:
    assert is_accepted(Judgment(scores={"a": 5, "b": 5, "c": 5}), 15)
    assert not is_accepted(Judgment(scores={"a": 5, "b": 5, "c": 4}), 15)


def test_prompt_carries_query_content_and_rubric() -> None:
    prompt = build_judge_prompt("base64 encode", "class Base64 {}")
    assert "Query: base64 encode" in prompt
    assert "Output: class Base64 {}" in prompt
    for name in RUBRIC:
        assert name in prompt
    assert "Do not output asterisks" in prompt


@pytest.mark.asyncio
async def test_score_accepts_three_criteria_on_first_try() -> None:
    judge, stub = _mk_judge(["Functionality: 5\nReadability: 4\nRobustness: 3"])
    j = await judge.score(_mk_impl(), "base64 encode")
    assert j.total_score == 12
    assert stub.calls == 1


@pytest.mark.asyncio
async def test_score_retries_then_defaults_when_too_few_criteria() -> None:
    judge, stub = _mk_judge(["Functionality: 5\nReadability: 4"] * 3)
    j = await judge.score(_mk_impl(), "base64 encode")
    assert j.defaulted
    assert j.total_score == 15
    assert stub.calls == 3


@pytest.mark.asyncio
async def test_score_counts_model_errors_as_attempts() -> None:
    judge, stub = _mk_judge([ModelServiceError("down"), RuntimeError("boom"), FULL_ANSWER])
    j = await judge.score(_mk_impl(), "base64 encode")
    assert j.total_score == 18
    assert stub.calls == 3


@pytest.mark.asyncio
async def test_score_never_raises_on_model_errors() -> None:
    judge, _ = _mk_judge([ModelServiceError("down")] * 3)
    j = await judge.score(_mk_impl(), "base64 encode")
    assert j.defaulted


@pytest.mark.asyncio
async def test_score_propagates_cancellation() -> None:
    judge, _ = _mk_judge([asyncio.CancelledError()])
    with pytest.raises(asyncio.CancelledError):
        await judge.score(_mk_impl(), "base64 encode")


@pytest.mark.asyncio
async def test_judge_batch_preserves_input_order_when_concurrent() -> None:
    class _SlowByContent:
        async def complete(self, prompt: str, *, model: str | None = None) -> ExecutionResult:
            if "class Slow" in prompt:
                await asyncio.sleep(0.02)
                return ExecutionResult(output="Functionality: 1\nReadability: 1\nRobustness: 1")
            return ExecutionResult(output="Functionality: 5\nReadability: 5\nRobustness: 5")

    judge = RelevanceJudge(PipelineConfig(judge_concurrency=2), executor=_SlowByContent())
    impls = [_mk_impl("1", "class Slow {}"), _mk_impl("2", "class Fast {}")]
    judgments = await judge.judge_batch(impls, "q")
    assert [j.total_score for j in judgments] == [3, 15]


@pytest.mark.asyncio
async def test_judge_batch_sequential_by_default() -> None:
    judge, stub = _mk_judge([FULL_ANSWER, "Functionality: 1\nReadability: 1\nRobustness: 1"])
    judgments = await judge.judge_batch([_mk_impl("7"), _mk_impl("3")], "q")
    assert [j.total_score for j in judgments] == [18, 3]
    assert stub.calls == 2
