"""Candidate selection from LASSO report tables."""

from __future__ import annotations

import logging
import math
from typing import Any

from lcr.types import CandidateId, ReportBundle, ReportRow

logger = logging.getLogger(__name__)


RANK_REPORT = "RANKREPORT"
SELECT_REPORT = "SELECTREPORT"
RANK_FIELD = "RANKPOSITION"
SYSTEM_FIELD = "SYSTEM"


def _rank_position(row: ReportRow) -> float:
    raw: Any = row.get(RANK_FIELD)
    if isinstance(raw, bool):
        return math.inf
    try:
        pos = float(raw)
    except (TypeError, ValueError):
        return math.inf
    return pos if not math.isnan(pos) else math.inf


def _system_ids(rows: list[ReportRow], limit: int) -> list[CandidateId]:
    out: list[CandidateId] = []
    for row in rows:
        if len(out) >= limit:
            break
        system = row.get(SYSTEM_FIELD)
        if system is None or system == "":
            continue
        out.append(system)
    return out


def select_top(bundle: ReportBundle, limit: int) -> list[CandidateId]:
    """Pick up to ``limit`` candidate ids.

    The rank report wins whenever it has rows: rows are ordered by rank position
    (stable, so equal positions keep report order; unranked rows go last). The
    select report is the fallback, taken in its existing order.
    """
    if limit <= 0:
        return []

    rank_rows = bundle.get(RANK_REPORT) or []
    if rank_rows:
        ordered = sorted(rank_rows, key=_rank_position)
        return _system_ids(ordered, limit)

    select_rows = bundle.get(SELECT_REPORT) or []
    if select_rows:
        return _system_ids(select_rows, limit)

    logger.error(
        "No candidates: neither %s nor %s has rows (reports: %s)",
        RANK_REPORT,
        SELECT_REPORT,
        sorted(bundle),
    )
    return []


__all__ = ["RANK_REPORT", "SELECT_REPORT", "select_top"]
