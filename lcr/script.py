"""LSL script formulation.

Turns a validated SearchSpecification into the study script the LASSO backend
executes: a Select action over the datasource, an ArenaExecute filter running the
test sequences, a Rank action over the filtered systems and a clone-removal step.
"""

from __future__ import annotations

from textwrap import dedent, indent

from lcr.synthesizer import is_valid_specification
from lcr.types import SearchSpecification


def _datasource(datasource: str) -> str:
    return f"dataSource '{datasource}'"


def _select_action(spec: SearchSpecification) -> str:
    return dedent(
        f"""\
        action(name: 'select', type: 'Select') {{
          abstraction('{spec.abstraction_name}') {{
            queryForClasses interfaceSpec, 'class-simple'
            rows = totalRows
            excludeClassesByKeywords(['private', 'abstract'])
            excludeTestClasses()
            excludeInternalPkgs()
          }}
        }}"""
    )


def _filter_action(spec: SearchSpecification) -> str:
    var = spec.abstraction_name.lower()
    sequences = indent("\n".join(t.strip() for t in spec.test_sequences), " " * 4)
    head = dedent(
        """\
        action(name: 'filter', type: 'ArenaExecute') {
          containerTimeout = 10 * 60 * 1000L
          specification = interfaceSpec
          sequences = ["""
    )
    tail = dedent(
        f"""\
          ]
          features = ['cc']
          maxAdaptations = noOfAdapters
          dependsOn 'select'
          includeAbstractions '{spec.abstraction_name}'
          profile('myTdsProfile') {{
            scope('class') {{ type = 'class' }}
            environment('java17') {{
              image = 'maven:3.6.3-openjdk-17'
            }}
          }}
          whenAbstractionsReady() {{
            def {var} = abstractions['{spec.abstraction_name}']
            def expectedBehaviour = toOracle(srm(abstraction: {var}).sequences)
            def matchesSrm = srm(abstraction: {var})
                    .systems
                    .equalTo(expectedBehaviour)
          }}
        }}"""
    )
    return f"{head}\n{sequences}\n{tail}"


def _rank_action() -> str:
    return dedent(
        """\
        action(name: 'rank', type: 'Rank') {
          criteria = ['FunctionalSimilarityReport.score:MAX:1']
          dependsOn 'filter'
          includeAbstractions '*'
        }"""
    )


def _clones_action(spec: SearchSpecification) -> str:
    return dedent(
        f"""\
        action(name: "clones", type: 'Nicad6') {{
          cloneType = "type2" // clone type to reject
          collapseClones = true // remove clone implementations
          dependsOn "select"
          includeAbstractions '{spec.abstraction_name}'
          profile {{
            environment('nicad') {{
              image = 'nicad:6.2'
            }}
          }}
        }}"""
    )


def formulate_lsl_script(spec: SearchSpecification, datasource: str) -> str:
    """Render the LSL study script for ``spec`` against ``datasource``."""
    if not is_valid_specification(spec):
        raise ValueError("Invalid search specification")

    actions = "\n".join(
        [_select_action(spec), _filter_action(spec), _rank_action(), _clones_action(spec)]
    )
    lines = [
        _datasource(datasource),
        f"def totalRows = {int(spec.row_budget)}",
        f"def noOfAdapters = {int(spec.adapter_budget)}",
        f'def interfaceSpec = """{spec.interface_signature}"""',
        f"study(name: '{spec.study_name}') {{",
        indent(actions, "  "),
        "}",
    ]
    return "\n".join(lines) + "\n"


__all__ = ["formulate_lsl_script"]
