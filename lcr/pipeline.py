from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict
from typing import Any

from rich.console import Console
from rich.table import Table

from lcr.client import LassoClient
from lcr.errors import RetrievalError, RetrievalExhausted
from lcr.judge import RelevanceJudge, is_accepted
from lcr.ranking import select_top
from lcr.script import formulate_lsl_script
from lcr.synthesizer import SpecSynthesizer
from lcr.types import (
    AttemptRecord,
    ContextItem,
    Implementation,
    ModelUsage,
    PipelineConfig,
    PipelineStage,
    RetrievalResult,
    SearchSpecification,
)

logger = logging.getLogger(__name__)


def _now_ms() -> float:
    return time.perf_counter() * 1000.0


def _usage_detail(usage: ModelUsage) -> str:
    return (
        f"calls={usage.calls} tokens={usage.tokens_prompt}/{usage.tokens_completion} "
        f"model_ms={usage.latency_ms:.0f}"
    )


def to_context_items(implementations: Sequence[Implementation]) -> list[ContextItem]:
    return [
        ContextItem(
            name=f"Implementation {i}",
            description=f"Code snippet from system {impl.id}",
            content=impl.content or "No content available",
        )
        for i, impl in enumerate(implementations, start=1)
    ]


class RetrievalPipeline:
    """Query in, judged implementations out.

    Each attempt runs synthesize → submit → poll → reports → rank → fetch → judge;
    a failed attempt is retried from synthesis after an exponential backoff.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        client_factory: Callable[[], LassoClient] | None = None,
        synthesizer: SpecSynthesizer | None = None,
        judge: RelevanceJudge | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        console: Console | None = None,
    ):
        self.config = config
        self._client_factory = client_factory or (lambda: LassoClient(config.backend))
        self.synthesizer = synthesizer or SpecSynthesizer(config)
        self.judge = judge or RelevanceJudge(config)
        self._sleep = sleep
        self.console = console or Console()

    def _backoff_s(self, attempt: int) -> float:
        return float(self.config.backoff_base_s) ** attempt

    async def _run_attempt(
        self,
        client: LassoClient,
        query: str,
        record: AttemptRecord,
        prior: SearchSpecification | None,
        stage_table: Table,
    ) -> None:
        cfg = self.config

        record.stage = PipelineStage.SYNTHESIZE
        t0 = _now_ms()
        spec = await self.synthesizer.synthesize(query, prior, usage=record.synthesis_usage)
        record.specification = spec
        stage_table.add_row(
            "synthesize",
            f"{_now_ms() - t0:.0f}",
            f"{spec.interface_signature} {_usage_detail(record.synthesis_usage)}",
        )

        record.stage = PipelineStage.SUBMIT
        t0 = _now_ms()
        if not client.is_authenticated:
            await client.authenticate()
        script = formulate_lsl_script(spec, cfg.backend.datasource)
        logger.debug("LSL script:\n%s", script)
        record.execution_id = await client.submit(script)
        stage_table.add_row("submit", f"{_now_ms() - t0:.0f}", f"id={record.execution_id}")

        record.stage = PipelineStage.POLL
        t0 = _now_ms()
        await client.await_completion(record.execution_id, timeout_s=cfg.poll_timeout_s)
        stage_table.add_row("poll", f"{_now_ms() - t0:.0f}", "SUCCESSFUL")

        record.stage = PipelineStage.REPORTS
        t0 = _now_ms()
        bundle = await client.fetch_report_bundle(record.execution_id)
        stage_table.add_row(
            "reports",
            f"{_now_ms() - t0:.0f}",
            ", ".join(f"{k}={len(v)}" for k, v in sorted(bundle.items())) or "none",
        )

        record.stage = PipelineStage.RANK
        record.candidate_ids = select_top(bundle, int(cfg.top_n))
        stage_table.add_row("rank", "0", f"ids={record.candidate_ids}")
        if not record.candidate_ids:
            raise RetrievalError("No candidates in the ranking or selection report")

        record.stage = PipelineStage.FETCH
        t0 = _now_ms()
        record.implementations = await client.fetch_implementations(
            cfg.backend.datasource, record.candidate_ids
        )
        stage_table.add_row(
            "fetch", f"{_now_ms() - t0:.0f}", f"implementations={len(record.implementations)}"
        )

        record.stage = PipelineStage.JUDGE
        t0 = _now_ms()
        record.judgments = await self.judge.judge_batch(
            record.implementations, query, usage=record.judge_usage
        )
        accepted = [
            impl
            for impl, judgment in zip(record.implementations, record.judgments)
            if is_accepted(judgment, cfg.acceptance_threshold)
        ]
        stage_table.add_row(
            "judge",
            f"{_now_ms() - t0:.0f}",
            "totals=" + ", ".join(str(j.total_score) for j in record.judgments)
            + f" accepted={len(accepted)} {_usage_detail(record.judge_usage)}",
        )
        if not accepted:
            raise RetrievalError(
                f"No implementation reached the acceptance threshold {cfg.acceptance_threshold}"
            )

        record.items = to_context_items(accepted)
        record.stage = PipelineStage.DONE

    async def retrieve(self, query: str) -> RetrievalResult:
        start_total = _now_ms()
        result = RetrievalResult(query=query)
        max_attempts = max(1, int(self.config.max_attempts))

        self.console.rule("LASSO Retrieval")
        self.console.print(f"Query: {query}")
        judge_model = self.config.judge_model or self.config.script_model
        self.console.print(
            f"Script model: {self.config.script_model.name} | Judge: {judge_model.name} | "
            f"Datasource: {self.config.backend.datasource} | Attempts: {max_attempts}"
        )

        prior: SearchSpecification | None = None
        last_error: BaseException | None = None

        async with self._client_factory() as client:
            for attempt in range(1, max_attempts + 1):
                attempt_start = _now_ms()
                record = AttemptRecord(attempt=attempt)
                result.attempts.append(record)

                stage_table = Table(title=f"Attempt {attempt} Stages")
                stage_table.add_column("Stage")
                stage_table.add_column("ms", justify="right")
                stage_table.add_column("Details")

                try:
                    run = self._run_attempt(client, query, record, prior, stage_table)
                    if self.config.attempt_timeout_s is None:
                        await run
                    else:
                        await asyncio.wait_for(run, timeout=self.config.attempt_timeout_s)
                except (RetrievalError, TimeoutError) as e:
                    last_error = e
                    record.error = str(e) or type(e).__name__
                    logger.warning(
                        "Attempt %d/%d failed at %s: %s",
                        attempt,
                        max_attempts,
                        record.stage.value,
                        record.error,
                    )
                except Exception as e:
                    last_error = e
                    record.error = f"{type(e).__name__}: {e}"
                    logger.error(
                        "Attempt %d/%d failed unexpectedly at %s",
                        attempt,
                        max_attempts,
                        record.stage.value,
                        exc_info=True,
                    )

                record.latency_ms = _now_ms() - attempt_start
                if record.specification is not None:
                    prior = record.specification

                self.console.print(stage_table)
                if record.succeeded:
                    result.items = record.items
                    break

                self.console.print(
                    f"Attempt {attempt} failed at {record.stage.value}: {record.error}"
                )
                if attempt < max_attempts:
                    delay = self._backoff_s(attempt)
                    logger.info("Retrying in %.0fs", delay)
                    await self._sleep(delay)

        result.total_latency_ms = _now_ms() - start_total
        self._print_summary(result)

        if not result.items:
            raise RetrievalExhausted(
                f"Retrieval failed after {result.num_attempts} attempts",
                attempts=result.num_attempts,
            ) from last_error
        return result

    def _print_summary(self, result: RetrievalResult) -> None:
        final_tbl = Table(title="Run Summary")
        final_tbl.add_column("Attempts", justify="right")
        final_tbl.add_column("Succeeded", justify="center")
        final_tbl.add_column("Items", justify="right")
        final_tbl.add_column("Total ms", justify="right")
        final_tbl.add_row(
            str(result.num_attempts),
            "yes" if result.items else "no",
            str(len(result.items)),
            f"{result.total_latency_ms:.0f}",
        )
        self.console.print(final_tbl)


def retrieval_result_to_dict(res: RetrievalResult) -> dict[str, Any]:
    return asdict(res)


__all__ = ["RetrievalPipeline", "retrieval_result_to_dict", "to_context_items"]
