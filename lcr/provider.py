"""Host-facing context provider boundary.

A host (an IDE assistant, a chat front end) calls ``retrieve(query, context)``
and receives context items; the host owns the trigger token that routed the
request here, so the adapter strips it before running the pipeline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from lcr.pipeline import RetrievalPipeline
from lcr.types import ContextItem, PipelineConfig

logger = logging.getLogger(__name__)


TRIGGER_TOKEN = "LASSO"


@dataclass
class ProviderContext:
    """What the host knows about the request besides the query."""

    full_input: str = ""


@runtime_checkable
class ContextProvider(Protocol):
    title: str
    display_title: str
    description: str

    async def retrieve(self, query: str, context: ProviderContext) -> list[ContextItem]: ...


def strip_trigger(full_input: str, token: str = TRIGGER_TOKEN) -> str:
    return full_input.replace(token, "", 1).strip()


class LassoContextProvider:
    title = "lasso"
    display_title = "LASSO"
    description = "Retrieve tested Java implementations from LASSO"

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        pipeline: RetrievalPipeline | None = None,
    ):
        self.config = config or PipelineConfig()
        self.pipeline = pipeline or RetrievalPipeline(self.config)

    async def retrieve(self, query: str, context: ProviderContext) -> list[ContextItem]:
        """Run one retrieval; RetrievalExhausted propagates to the host."""
        effective = strip_trigger(context.full_input or "") or query.strip()
        logger.info("LASSO provider query: %s", effective)
        result = await self.pipeline.retrieve(effective)
        return result.items


__all__ = [
    "ContextProvider",
    "LassoContextProvider",
    "ProviderContext",
    "TRIGGER_TOKEN",
    "strip_trigger",
]
