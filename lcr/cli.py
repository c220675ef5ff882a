from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.table import Table

from lcr.client import LassoClient
from lcr.errors import RetrievalExhausted
from lcr.executor import ModelExecutor
from lcr.pipeline import RetrievalPipeline, retrieval_result_to_dict
from lcr.types import BackendConfig, ModelConfig, PipelineConfig

DEFAULT_MODEL = "qwen2.5-coder:7b-instruct-q8_0"


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data if isinstance(data, dict) else {}


def _value(section: dict[str, Any], key: str, default: Any) -> Any:
    """Return section[key] unless it is missing or null; falsy values such as 0 are kept."""
    value = section.get(key)
    return default if value is None else value


def _load_models(config_dir: Path) -> tuple[ModelConfig, ModelConfig | None]:
    cfg = _read_yaml(config_dir / "models.yaml")
    backends = cfg.get("backends") or {}
    models = cfg.get("models") or {}
    defaults = cfg.get("defaults") or {}

    def build(key: str) -> ModelConfig:
        entry = models.get(key) or {}
        backend_key = entry.get("backend")
        backend = backends.get(backend_key) if isinstance(backends, dict) else None
        base_url = "http://localhost:11434/v1"
        api_key = "ollama"
        if isinstance(backend, dict):
            base_url = str(backend.get("base_url") or base_url)
            api_key = str(backend.get("api_key") or api_key)
        return ModelConfig(
            name=str(entry.get("name") or key),
            base_url=base_url,
            api_key=api_key,
            context_window=int(_value(entry, "context_window", 12000)),
            keep_alive_s=float(_value(entry, "keep_alive_s", 60.0)),
            max_output_tokens=int(_value(entry, "max_output_tokens", 1024)),
            temperature=float(_value(entry, "temperature", 0.7)),
            request_timeout_s=float(_value(entry, "request_timeout_s", 300.0)),
            max_retries=int(_value(entry, "max_retries", 2)),
            retry_backoff_s=float(_value(entry, "retry_backoff_s", 2.0)),
        )

    script_key = str(defaults.get("script") or "")
    judge_key = str(defaults.get("judge") or "")

    script = build(script_key) if script_key else ModelConfig(name=DEFAULT_MODEL)
    judge = build(judge_key) if judge_key else None
    return script, judge


def _load_backend(section: dict[str, Any]) -> BackendConfig:
    defaults = BackendConfig()
    return BackendConfig(
        base_url=str(section.get("base_url") or defaults.base_url),
        api_prefix=str(section.get("api_prefix") or defaults.api_prefix),
        auth_path=str(section.get("auth_path") or defaults.auth_path),
        username=str(section.get("username") or defaults.username),
        password=str(section.get("password") or defaults.password),
        datasource=str(section.get("datasource") or defaults.datasource),
        poll_interval_s=float(_value(section, "poll_interval_s", defaults.poll_interval_s)),
        request_timeout_s=float(_value(section, "request_timeout_s", defaults.request_timeout_s)),
    )


_PIPELINE_KEYS: dict[str, type] = {
    "max_attempts": int,
    "backoff_base_s": float,
    "max_synthesis_attempts": int,
    "row_budget": int,
    "adapter_budget": int,
    "top_n": int,
    "max_judge_attempts": int,
    "min_judge_criteria": int,
    "acceptance_threshold": int,
    "judge_concurrency": int,
    "poll_timeout_s": float,
    "attempt_timeout_s": float,
}


def load_pipeline_config(config_dir: Path) -> PipelineConfig:
    script, judge = _load_models(config_dir)
    lasso = _read_yaml(config_dir / "lasso.yaml")
    backend = _load_backend(lasso.get("backend") or {})

    cfg = PipelineConfig(script_model=script, judge_model=judge, backend=backend)
    pipeline = lasso.get("pipeline") or {}
    if isinstance(pipeline, dict):
        for key, cast in _PIPELINE_KEYS.items():
            if pipeline.get(key) is not None:
                setattr(cfg, key, cast(pipeline[key]))
    return cfg


def _apply_runtime_overrides(args: argparse.Namespace, cfg: PipelineConfig) -> PipelineConfig:
    max_attempts = getattr(args, "max_attempts", None)
    if max_attempts is not None:
        cfg.max_attempts = int(max_attempts)
    threshold = getattr(args, "threshold", None)
    if threshold is not None:
        cfg.acceptance_threshold = int(threshold)
    top_n = getattr(args, "top_n", None)
    if top_n is not None:
        cfg.top_n = int(top_n)
    return cfg


async def _cmd_run(args: argparse.Namespace, cfg: PipelineConfig, console: Console) -> int:
    # Keep stdout clean for JSON consumers.
    progress = Console(stderr=True) if args.json else console
    pipe = RetrievalPipeline(cfg, console=progress)
    try:
        res = await pipe.retrieve(args.query)
    except RetrievalExhausted as e:
        console.print(f"[red]{e}[/red]")
        return 1

    if args.json:
        print(json.dumps(retrieval_result_to_dict(res), indent=2, default=str))
        return 0

    for item in res.items:
        console.rule(f"{item.name} ({item.description})")
        console.print(item.content, markup=False, highlight=False)
    return 0


async def _cmd_status(args: argparse.Namespace, cfg: PipelineConfig, console: Console) -> int:
    tbl = Table(title="Status")
    tbl.add_column("Service")
    tbl.add_column("OK")
    tbl.add_column("Details")

    # LASSO backend
    lasso_ok = False
    lasso_detail = f"base_url={cfg.backend.base_url} datasource={cfg.backend.datasource}"
    try:
        async with LassoClient(cfg.backend) as c:
            lasso_ok = await c.health_check()
    except Exception as e:
        lasso_detail = str(e)
    tbl.add_row("lasso", "yes" if lasso_ok else "no", lasso_detail)

    # Ollama/OpenAI-compatible
    llm_ok = False
    llm_detail = ""
    try:
        ex = ModelExecutor(cfg.script_model)
        llm_ok = await ex.health_check()
        llm_detail = f"model={cfg.script_model.name} base_url={cfg.script_model.base_url}"
    except Exception as e:
        llm_detail = str(e)
    tbl.add_row("llm", "yes" if llm_ok else "no", llm_detail)

    console.print(tbl)
    return 0 if (lasso_ok and llm_ok) else 1


def _build_parser(default_config_dir: Path) -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="lcr", description="LASSO code retrieval")
    p.add_argument("--config-dir", type=str, default=str(default_config_dir))
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    runp = sub.add_parser("run", help="retrieve implementations for a query")
    runp.add_argument("query", type=str, help="natural-language description of the code")
    runp.add_argument("--max-attempts", type=int, default=None, help="outer retry attempts")
    runp.add_argument(
        "--threshold", type=int, default=None, help="minimum total judge score to accept"
    )
    runp.add_argument("--top-n", type=int, default=None, help="candidates to fetch and judge")
    runp.add_argument("--json", action="store_true", help="print the full result as JSON")

    sub.add_parser("status", help="check LASSO + model connectivity")
    return p


def main() -> None:
    console = Console()
    base_dir = Path(__file__).resolve().parents[1]

    parser = _build_parser(base_dir / "configs")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    cfg = _apply_runtime_overrides(args, load_pipeline_config(Path(args.config_dir)))

    async def run_cmd() -> int:
        if args.cmd == "run":
            return await _cmd_run(args, cfg, console)
        if args.cmd == "status":
            return await _cmd_status(args, cfg, console)
        console.print(f"Unknown command: {args.cmd}")
        return 2

    raise SystemExit(asyncio.run(run_cmd()))
