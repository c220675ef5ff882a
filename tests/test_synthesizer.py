from __future__ import annotations

import pytest

from lcr.errors import ModelServiceError, SynthesisFailure
from lcr.script import formulate_lsl_script
from lcr.synthesizer import SpecSynthesizer, build_prompt, is_valid_specification
from lcr.types import ExecutionResult, PipelineConfig, SearchSpecification, SpecDraft

BASE64_LABELED = '''interfaceSpec: """Base64{encode(byte[])->byte[]}"""
studyName: Base64encode
abstractionName: Base64
abstractionVariableName: base64encode
testSequences:
'testEncode': sheet(base64:'Base64', p2:"user:pass".getBytes()) {
    row '', 'create', '?base64'
    row 'dXNlcjpwYXNz'.getBytes(), 'encode', 'A1', '?p2'
}
'''


class _StubExecutor:
    """Replays canned outputs; an Exception instance is raised instead of returned."""

    def __init__(self, outputs: list):
        self.outputs = list(outputs)
        self.prompts: list[str] = []

    async def complete(self, prompt: str, *, model: str | None = None) -> ExecutionResult:
        self.prompts.append(prompt)
        out = self.outputs.pop(0)
        if isinstance(out, Exception):
            raise out
        return ExecutionResult(output=out, model=model or "stub")


def _mk_synth(outputs: list, **cfg) -> tuple[SpecSynthesizer, _StubExecutor]:
    stub = _StubExecutor(outputs)
    return SpecSynthesizer(PipelineConfig(**cfg), executor=stub), stub


def _mk_spec(**overrides) -> SearchSpecification:
    fields = dict(
        interface_signature="Base64{encode(byte[])->byte[]}",
        study_name="Base64encode",
        abstraction_name="Base64",
        abstraction_variable_name="base64encode",
        test_sequences=("'t': sheet() {}",),
    )
    fields.update(overrides)
    return SearchSpecification(**fields)


def test_is_valid_specification_accepts_complete_spec() -> None:
    assert is_valid_specification(_mk_spec())


@pytest.mark.parametrize(
    "overrides",
    [
        {"interface_signature": ""},
        {"study_name": "   "},
        {"abstraction_name": ""},
        {"abstraction_variable_name": ""},
        {"test_sequences": ()},
        {"row_budget": 0},
        {"adapter_budget": -1},
    ],
)
def test_is_valid_specification_rejects_incomplete_spec(overrides: dict) -> None:
    assert not is_valid_specification(_mk_spec(**overrides))


def test_is_valid_specification_rejects_drafts_with_missing_fields() -> None:
    assert not is_valid_specification(None)
    assert not is_valid_specification(SpecDraft(study_name="x"))


def test_build_prompt_without_prior_has_no_divergence_block() -> None:
    prompt = build_prompt("base64 encode")
    assert "**User Query:** base64 encode" in prompt
    assert "Last generation failed" not in prompt
    assert "different abstraction details" not in prompt
    assert "Do not use the '%' sign" in prompt


def test_build_prompt_with_prior_quotes_previous_names() -> None:
    prompt = build_prompt("base64 encode", _mk_spec())
    assert "Last generation failed" in prompt
    assert 'Last interface spec: "Base64{encode(byte[])->byte[]}"' in prompt
    assert 'Last abstraction name: "Base64"' in prompt
    assert 'Last abstraction variable name: "base64encode"' in prompt
    assert prompt.rstrip().endswith("]}")
    assert '"studyName": "Base64encode"' in prompt


@pytest.mark.asyncio
async def test_synthesize_returns_valid_spec_with_configured_budgets() -> None:
    synth, stub = _mk_synth([BASE64_LABELED], row_budget=7, adapter_budget=9)
    spec = await synth.synthesize("base64 encode")

    assert spec.interface_signature == "Base64{encode(byte[])->byte[]}"
    assert spec.row_budget == 7
    assert spec.adapter_budget == 9
    assert len(spec.test_sequences) == 4
    assert is_valid_specification(spec)
    assert len(stub.prompts) == 1


@pytest.mark.asyncio
async def test_trailing_prose_stays_out_of_rendered_script() -> None:
    synth, _ = _mk_synth([BASE64_LABELED + "Note: these tests cover the basic encoding path.\n"])
    spec = await synth.synthesize("base64 encode")
    script = formulate_lsl_script(spec, "mavenCentral2023")

    assert spec.test_sequences[-1] == "}"
    assert "Note:" not in script
    assert "'testEncode': sheet(" in script


@pytest.mark.asyncio
async def test_synthesize_feeds_invalid_draft_back_as_prior() -> None:
    synth, stub = _mk_synth(['interfaceSpec: """Foo{bar()->int}"""', BASE64_LABELED])
    spec = await synth.synthesize("base64 encode")

    assert spec.abstraction_name == "Base64"
    assert len(stub.prompts) == 2
    assert "Last generation failed" not in stub.prompts[0]
    assert 'Last interface spec: "Foo{bar()->int}"' in stub.prompts[1]


@pytest.mark.asyncio
async def test_synthesize_uses_caller_prior_on_first_prompt() -> None:
    synth, stub = _mk_synth([BASE64_LABELED])
    await synth.synthesize("base64 encode", prior_attempt=_mk_spec(abstraction_name="Enc"))
    assert 'Last abstraction name: "Enc"' in stub.prompts[0]


@pytest.mark.asyncio
async def test_synthesize_raises_after_exhausting_attempts() -> None:
    synth, stub = _mk_synth(["nothing useful"] * 3)
    with pytest.raises(SynthesisFailure):
        await synth.synthesize("base64 encode")
    assert len(stub.prompts) == 3


@pytest.mark.asyncio
async def test_synthesize_tolerates_transient_model_errors() -> None:
    synth, stub = _mk_synth([ModelServiceError("down"), BASE64_LABELED])
    spec = await synth.synthesize("base64 encode")
    assert spec.study_name == "Base64encode"
    assert len(stub.prompts) == 2


@pytest.mark.asyncio
async def test_synthesize_reraises_model_error_on_last_attempt() -> None:
    synth, _ = _mk_synth(["junk", "junk", ModelServiceError("down")])
    with pytest.raises(ModelServiceError):
        await synth.synthesize("base64 encode")
