"""Search-specification synthesis.

Prompts the script model for LSL components, decodes them with the response
parser and admits only complete specifications. Failed attempts are fed back to
the model as an example of what not to produce again.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from lcr.errors import ModelServiceError, SynthesisFailure
from lcr.executor import ModelExecutor
from lcr.parser import parse_response
from lcr.types import ModelUsage, PipelineConfig, SearchSpecification, SpecDraft

logger = logging.getLogger(__name__)


_INSTRUCTIONS = '''\
- LASSO retrieves Java snippets and requires an LSL script.
- Based on the user query, generate the following components:

1. **interfaceSpec**: Method interface in LQL notation.
   - Format: """<interface_spec>"""
   - Simplify object inputs by inferring appropriate data types based on context.
   - Example: """PalindromeGenerator{generatePalindrome(int)->int}"""

2. **studyName**: A meaningful name for the study.
   - Example: Derived from interfaceSpec, such as "CalculatePrice Study"

3. **abstractionName**: A meaningful abstraction name.
   - Example: Derived from studyName, such as "CalculatePrice"

4. **abstractionVariableName**: A meaningful abstraction variable name.
   - Convert abstractionName to a variable-friendly format.
   - Example: "calculatePrice"

5. **testSequences**: Comprehensive test sequences to filter candidates.
   - **IMPORTANT**: Generate the output in the exact format below. Do not use JSON.

```
interfaceSpec: """<interface_spec>"""
studyName: <study_name>
abstractionName: <abstraction_name>
abstractionVariableName: <abstraction_variable_name>
testSequences:
'test_name_1': sheet(<parameters>) {
    row <output>, '<method_name>', <input1>, <input2>
    row <output>, '<method_name>', <input1>, <input2>
},
'test_name_2': sheet(<parameters>) {
    row <output>, '<method_name>', <input1>, <input2>
    row <output>, '<method_name>', <input1>, <input2>
}
```

Additional Instructions:
- Ensure the interface is correctly formatted, e.g., """PalindromeGenerator{generatePalindrome(int)->int}"""
- In case inputs or outputs are objects, guess the most likely basic data type instead.
- Use context to predict method functionalities and appropriate online method names.
- Do not use the '%' sign in test sequences.
- If tests are provided, incorporate them directly into the testSequences section, do not generate extra tests unless explicitly asked to do so.
- Exclude any explanations or additional text.'''

_EXAMPLES = '''\
```
interfaceSpec: """Base64{encode(byte[])->byte[]}"""
studyName: Base64encode
abstractionName: Base64
abstractionVariableName: base64encode
testSequences:
'testEncode': sheet(base64:'Base64', p2:"user:pass".getBytes()) {
    row '', 'create', '?base64'
    row 'dXNlcjpwYXNz'.getBytes(), 'encode', 'A1', '?p2'
},
'testEncode_padding': sheet(base64:'Base64', p2:"Hello World".getBytes()) {
    row '', 'create', '?base64'
    row 'SGVsbG8gV29ybGQ='.getBytes(), 'encode', 'A1', '?p2'
}
```

```
interfaceSpec: """PalindromeGenerator{generatePalindrome(int)->int}"""
studyName: PalindromeNumberGenerator
abstractionName: PalindromeGenerator
abstractionVariableName: palindromeNumberGenerator
testSequences:
'testGeneratePalindrome': sheet(generator:'PalindromeGenerator', input:123) {
    row '', 'create', '?generator'
    row 12321, 'generatePalindrome', 'A1', '?input'
},
'testGeneratePalindromeWithSingleDigit': sheet(generator:'PalindromeGenerator', input:5) {
    row '', 'create', '?generator'
    row 55, 'generatePalindrome', 'A1', '?input'
},
'testGeneratePalindromeWithZero': sheet(generator:'PalindromeGenerator', input:0) {
    row '', 'create', '?generator'
    row 0, 'generatePalindrome', 'A1', '?input'
}
```'''


def is_valid_specification(spec: Any) -> bool:
    """Admission gate: every required field present, tests non-empty, budgets > 0."""
    if spec is None:
        return False
    for name in (
        "interface_signature",
        "study_name",
        "abstraction_name",
        "abstraction_variable_name",
    ):
        value = getattr(spec, name, None)
        if not isinstance(value, str) or not value.strip():
            return False

    tests = getattr(spec, "test_sequences", None)
    if not tests or isinstance(tests, str):
        return False

    for name in ("row_budget", "adapter_budget"):
        value = getattr(spec, name, None)
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            return False
    return True


def build_prompt(query: str, prior: SearchSpecification | SpecDraft | None = None) -> str:
    """Assemble the synthesis prompt, with divergence instructions on retries."""
    previous = ""
    if prior is not None:
        last = prior.to_dict()
        previous = (
            "- Last generation failed. Please generate a different interface name that "
            "describes the method.\n"
            f'- Last interface spec: "{last.get("interfaceSpec", "")}"\n'
            f'- Last abstraction name: "{last.get("abstractionName", "")}"\n'
            f'- Last abstraction variable name: "{last.get("abstractionVariableName", "")}"\n'
        )

    prompt = (
        "Task: Generate LSL script components based on a user query.\n\n"
        "Instructions:\n"
        f"{previous}"
        f"{_INSTRUCTIONS}\n\n"
        "Generate the LSL script components for the following query:\n\n"
        f"**User Query:** {query}\n\n"
        "**Examples:**\n\n"
        f"{_EXAMPLES}\n"
    )

    if prior is not None:
        prompt += "\n- Please use different abstraction details than: " + json.dumps(
            prior.to_dict(), ensure_ascii=False
        )
    return prompt


class SpecSynthesizer:
    """Turns a free-text query into a validated SearchSpecification."""

    def __init__(self, config: PipelineConfig, executor: ModelExecutor | None = None):
        self.config = config
        self.model = config.script_model
        self.executor = executor or ModelExecutor(config.script_model)

    def _complete_draft(self, draft: SpecDraft) -> SpecDraft:
        # Budgets are configuration, not model output.
        if draft.row_budget is None:
            draft.row_budget = int(self.config.row_budget)
        if draft.adapter_budget is None:
            draft.adapter_budget = int(self.config.adapter_budget)
        return draft

    @staticmethod
    def _freeze(draft: SpecDraft) -> SearchSpecification:
        return SearchSpecification(
            interface_signature=str(draft.interface_signature),
            study_name=str(draft.study_name),
            abstraction_name=str(draft.abstraction_name),
            abstraction_variable_name=str(draft.abstraction_variable_name),
            test_sequences=tuple(draft.test_sequences or ()),
            row_budget=int(draft.row_budget or 0),
            adapter_budget=int(draft.adapter_budget or 0),
        )

    async def synthesize(
        self,
        query: str,
        prior_attempt: SearchSpecification | SpecDraft | None = None,
        usage: ModelUsage | None = None,
    ) -> SearchSpecification:
        max_attempts = max(1, int(self.config.max_synthesis_attempts))
        prior = prior_attempt

        for attempt in range(1, max_attempts + 1):
            prompt = build_prompt(query, prior)
            try:
                result = await self.executor.complete(prompt, model=self.model.name)
            except ModelServiceError as e:
                logger.warning("synthesize: attempt %d/%d failed: %s", attempt, max_attempts, e)
                if attempt >= max_attempts:
                    raise
                continue

            if usage is not None:
                usage.add(result)
            logger.debug("synthesize: raw response (%s): %s", result.model, result.output[:500])
            draft = self._complete_draft(parse_response(result.output))
            if is_valid_specification(draft):
                spec = self._freeze(draft)
                logger.info(
                    "synthesize: attempt %d produced %s (%d test lines)",
                    attempt,
                    spec.interface_signature,
                    len(spec.test_sequences),
                )
                return spec

            logger.info(
                "synthesize: attempt %d/%d invalid or incomplete: %s",
                attempt,
                max_attempts,
                sorted(draft.to_dict()),
            )
            if draft.interface_signature or draft.abstraction_name or draft.test_sequences:
                prior = draft

        raise SynthesisFailure(
            f"Failed to generate a valid search specification after {max_attempts} attempts"
        )


__all__ = ["SpecSynthesizer", "build_prompt", "is_valid_specification"]
