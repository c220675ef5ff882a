"""Shared types for the LASSO code retrieval pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Search specification types
# ---------------------------------------------------------------------------

DEFAULT_ROW_BUDGET = 10
DEFAULT_ADAPTER_BUDGET = 50


@dataclass(frozen=True)
class SearchSpecification:
    """A validated, backend-executable description of the interface to search for."""

    interface_signature: str  # LQL notation, e.g. Base64{encode(byte[])->byte[]}
    study_name: str
    abstraction_name: str
    abstraction_variable_name: str
    test_sequences: tuple[str, ...]
    row_budget: int = DEFAULT_ROW_BUDGET
    adapter_budget: int = DEFAULT_ADAPTER_BUDGET

    def to_dict(self) -> dict[str, Any]:
        return {
            "interfaceSpec": self.interface_signature,
            "studyName": self.study_name,
            "abstractionName": self.abstraction_name,
            "abstractionVariableName": self.abstraction_variable_name,
            "totalRows": self.row_budget,
            "noOfAdapters": self.adapter_budget,
            "testSequences": list(self.test_sequences),
        }


@dataclass
class SpecDraft:
    """Fields recovered from raw model text; anything absent stays None."""

    interface_signature: str | None = None
    study_name: str | None = None
    abstraction_name: str | None = None
    abstraction_variable_name: str | None = None
    test_sequences: list[str] | None = None
    row_budget: int | None = None
    adapter_budget: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out = {
            "interfaceSpec": self.interface_signature,
            "studyName": self.study_name,
            "abstractionName": self.abstraction_name,
            "abstractionVariableName": self.abstraction_variable_name,
            "totalRows": self.row_budget,
            "noOfAdapters": self.adapter_budget,
            "testSequences": self.test_sequences,
        }
        return {k: v for k, v in out.items() if v is not None}

    @property
    def is_empty(self) -> bool:
        return not self.to_dict()


# ---------------------------------------------------------------------------
# Backend result types
# ---------------------------------------------------------------------------

ExecutionHandle = str
CandidateId = str | int
ReportRow = dict[str, Any]
ReportBundle = dict[str, list[ReportRow]]


@dataclass
class Implementation:
    """A concrete code unit fetched from the backend."""

    id: CandidateId
    content: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Execution types
# ---------------------------------------------------------------------------


@dataclass
class ExecutionResult:
    """Result from running a model on a prompt."""

    output: str
    model: str = ""
    latency_ms: float = 0.0
    tokens_prompt: int = 0
    tokens_completion: int = 0


@dataclass
class ModelUsage:
    """Running totals over the completions made for one stage."""

    calls: int = 0
    tokens_prompt: int = 0
    tokens_completion: int = 0
    latency_ms: float = 0.0

    def add(self, result: ExecutionResult) -> None:
        self.calls += 1
        self.tokens_prompt += result.tokens_prompt
        self.tokens_completion += result.tokens_completion
        self.latency_ms += result.latency_ms


# ---------------------------------------------------------------------------
# Judging types
# ---------------------------------------------------------------------------


@dataclass
class Judgment:
    """Rubric scores for one implementation."""

    scores: dict[str, int] = field(default_factory=dict)
    justification: str = ""
    defaulted: bool = False  # True when the judge fell back to neutral scores

    @property
    def total_score(self) -> int:
        return sum(self.scores.values())


# ---------------------------------------------------------------------------
# Host-facing types
# ---------------------------------------------------------------------------


@dataclass
class ContextItem:
    """A retrieval result as handed back to the host."""

    name: str
    description: str
    content: str


# ---------------------------------------------------------------------------
# Pipeline types
# ---------------------------------------------------------------------------


class PipelineStage(str, Enum):
    """Stages of one retrieval attempt."""

    SYNTHESIZE = "synthesize"
    SUBMIT = "submit"
    POLL = "poll"
    REPORTS = "reports"
    RANK = "rank"
    FETCH = "fetch"
    JUDGE = "judge"
    DONE = "done"


@dataclass
class AttemptRecord:
    """Record of a single outer retrieval attempt."""

    attempt: int
    stage: PipelineStage = PipelineStage.SYNTHESIZE
    specification: SearchSpecification | None = None
    execution_id: ExecutionHandle | None = None
    candidate_ids: list[CandidateId] = field(default_factory=list)
    implementations: list[Implementation] = field(default_factory=list)
    judgments: list[Judgment] = field(default_factory=list)
    items: list[ContextItem] = field(default_factory=list)
    synthesis_usage: ModelUsage = field(default_factory=ModelUsage)
    judge_usage: ModelUsage = field(default_factory=ModelUsage)
    error: str | None = None
    latency_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.stage == PipelineStage.DONE and bool(self.items)


@dataclass
class RetrievalResult:
    """Full result of a retrieval run (possibly multi-attempt)."""

    query: str
    attempts: list[AttemptRecord] = field(default_factory=list)
    items: list[ContextItem] = field(default_factory=list)
    total_latency_ms: float = 0.0

    @property
    def num_attempts(self) -> int:
        return len(self.attempts)


# ---------------------------------------------------------------------------
# Configuration types
# ---------------------------------------------------------------------------


@dataclass
class ModelConfig:
    """Configuration for a model backend."""

    name: str  # model identifier (e.g. "qwen2.5-coder:7b-instruct-q8_0")
    base_url: str = "http://localhost:11434/v1"
    api_key: str = "ollama"  # ignored by Ollama, required by the SDK
    context_window: int = 12000  # sent as options.num_ctx
    keep_alive_s: float = 60.0  # how long the service keeps the model loaded
    max_output_tokens: int = 1024
    temperature: float = 0.7
    # Execution controls
    request_timeout_s: float = 300.0
    max_retries: int = 2
    retry_backoff_s: float = 2.0


@dataclass
class BackendConfig:
    """Connection settings for the LASSO search backend."""

    base_url: str = "http://localhost:10222"
    api_prefix: str = "/api/v1/lasso"
    auth_path: str = "/auth/signin"
    username: str = "admin"
    password: str = "admin"
    datasource: str = "mavenCentral2023"
    poll_interval_s: float = 5.0
    request_timeout_s: float = 60.0


@dataclass
class PipelineConfig:
    """Configuration for a retrieval run."""

    script_model: ModelConfig = field(
        default_factory=lambda: ModelConfig(name="qwen2.5-coder:7b-instruct-q8_0")
    )
    judge_model: ModelConfig | None = None  # defaults to script_model
    backend: BackendConfig = field(default_factory=BackendConfig)

    # Outer loop
    max_attempts: int = 3
    backoff_base_s: float = 2.0  # sleep backoff_base_s ** attempt between attempts

    # Synthesis
    max_synthesis_attempts: int = 3
    row_budget: int = DEFAULT_ROW_BUDGET
    adapter_budget: int = DEFAULT_ADAPTER_BUDGET

    # Ranking / judging
    top_n: int = 5
    max_judge_attempts: int = 3
    min_judge_criteria: int = 3
    acceptance_threshold: int = 15
    judge_concurrency: int = 1

    # Deadlines (None = unbounded)
    poll_timeout_s: float | None = None
    attempt_timeout_s: float | None = None
