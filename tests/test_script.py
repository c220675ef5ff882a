from __future__ import annotations

import pytest

from lcr.script import formulate_lsl_script
from lcr.types import SearchSpecification


def _mk_spec(**overrides) -> SearchSpecification:
    fields = dict(
        interface_signature="Base64{encode(byte[])->byte[]}",
        study_name="Base64encode",
        abstraction_name="Base64",
        abstraction_variable_name="base64encode",
        test_sequences=(
            "'testEncode': sheet(base64:'Base64', p2:\"user:pass\".getBytes()) {",
            "row '', 'create', '?base64'",
            "}",
        ),
        row_budget=10,
        adapter_budget=50,
    )
    fields.update(overrides)
    return SearchSpecification(**fields)


def test_script_header_carries_budgets_and_interface() -> None:
    script = formulate_lsl_script(_mk_spec(), "mavenCentral2023")
    lines = script.splitlines()
    assert lines[0] == "dataSource 'mavenCentral2023'"
    assert lines[1] == "def totalRows = 10"
    assert lines[2] == "def noOfAdapters = 50"
    assert lines[3] == 'def interfaceSpec = """Base64{encode(byte[])->byte[]}"""'
    assert lines[4] == "study(name: 'Base64encode') {"
    assert lines[-1] == "}"


def test_script_contains_all_actions_in_order() -> None:
    script = formulate_lsl_script(_mk_spec(), "mavenCentral2023")
    positions = [
        script.index("action(name: 'select', type: 'Select')"),
        script.index("action(name: 'filter', type: 'ArenaExecute')"),
        script.index("action(name: 'rank', type: 'Rank')"),
        script.index("action(name: \"clones\", type: 'Nicad6')"),
    ]
    assert positions == sorted(positions)
    assert "rows = totalRows" in script
    assert "maxAdaptations = noOfAdapters" in script
    assert "abstraction('Base64')" in script


def test_script_embeds_test_sequences_and_lowercased_variable() -> None:
    script = formulate_lsl_script(_mk_spec(), "mavenCentral2023")
    assert "'testEncode': sheet(base64:'Base64', p2:\"user:pass\".getBytes()) {" in script
    assert "row '', 'create', '?base64'" in script
    assert "def base64 = abstractions['Base64']" in script
    assert "srm(abstraction: base64)" in script


def test_script_is_deterministic() -> None:
    spec = _mk_spec()
    assert formulate_lsl_script(spec, "ds") == formulate_lsl_script(spec, "ds")


def test_script_rejects_invalid_specification() -> None:
    with pytest.raises(ValueError):
        formulate_lsl_script(_mk_spec(test_sequences=()), "mavenCentral2023")
