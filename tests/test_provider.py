from __future__ import annotations

import pytest

from lcr.errors import RetrievalExhausted
from lcr.provider import (
    ContextProvider,
    LassoContextProvider,
    ProviderContext,
    strip_trigger,
)
from lcr.types import ContextItem, RetrievalResult


class _StubPipeline:
    def __init__(self, items: list[ContextItem] | None = None, error: Exception | None = None):
        self.items = items or []
        self.error = error
        self.queries: list[str] = []

    async def retrieve(self, query: str) -> RetrievalResult:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return RetrievalResult(query=query, items=self.items)


def _mk_provider(**kw) -> tuple[LassoContextProvider, _StubPipeline]:
    pipe = _StubPipeline(**kw)
    return LassoContextProvider(pipeline=pipe), pipe


def test_strip_trigger_removes_first_occurrence_only() -> None:
    assert strip_trigger("LASSO base64 encode") == "base64 encode"
    assert strip_trigger("LASSO find LASSO") == "find LASSO"
    assert strip_trigger("no trigger here") == "no trigger here"


def test_provider_metadata_and_protocol() -> None:
    provider, _ = _mk_provider()
    assert provider.title == "lasso"
    assert provider.display_title == "LASSO"
    assert isinstance(provider, ContextProvider)


@pytest.mark.asyncio
async def test_retrieve_uses_stripped_full_input() -> None:
    item = ContextItem(
        name="Implementation 1", description="Code snippet from system 7", content="x"
    )
    provider, pipe = _mk_provider(items=[item])
    items = await provider.retrieve("ignored", ProviderContext(full_input="LASSO base64 encode"))
    assert pipe.queries == ["base64 encode"]
    assert items == [item]


@pytest.mark.asyncio
async def test_retrieve_falls_back_to_query_when_input_is_only_trigger() -> None:
    provider, pipe = _mk_provider()
    await provider.retrieve("reverse a string", ProviderContext(full_input="  LASSO  "))
    assert pipe.queries == ["reverse a string"]


@pytest.mark.asyncio
async def test_retrieve_propagates_exhaustion() -> None:
    provider, _ = _mk_provider(error=RetrievalExhausted("Retrieval failed after 3 attempts", 3))
    with pytest.raises(RetrievalExhausted):
        await provider.retrieve("q", ProviderContext(full_input="LASSO q"))
