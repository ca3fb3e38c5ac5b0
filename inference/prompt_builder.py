"""Structured prompt builder for record enrichment."""

import json
import re
from typing import Any, Dict, List, Mapping, Sequence

from inference.schema import EnrichmentBatch

_SCHEMA_JSON = json.dumps(EnrichmentBatch.model_json_schema(), indent=2)

# Only these canonical fields are sent to the inference service.
PROMPT_FIELDS = (
    "external_id",
    "title",
    "description",
    "agency_name",
    "status",
    "minimum_award",
    "maximum_award",
    "total_funding_available",
    "open_date",
    "close_date",
    "eligible_applicants",
    "eligible_project_types",
    "eligible_locations",
    "categories",
)

_SYSTEM_INSTRUCTIONS = """\
You enrich funding opportunity records.

STRICT RULES:
- Return exactly one entry per input record, keyed by its external_id.
- Use ONLY the data provided below. Do not invent amounts or dates.
- Return strictly valid JSON matching the schema defined below.
- Do NOT include any text outside the JSON object.
- Do NOT wrap the JSON in markdown code fences.
"""

_RECORDS_TEMPLATE = """\
## Records
<records>
{data}
</records>
"""

_RECORDS_PATTERN = re.compile(r"<records>\s*(.*?)\s*</records>", re.DOTALL)


def prompt_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Project a canonical record onto the fields sent for enrichment."""
    return {name: record[name] for name in PROMPT_FIELDS if record.get(name) is not None}


class EnrichmentPromptBuilder:
    """Builds a deterministic structured prompt for one chunk of records."""

    def build_prompt(self, records: Sequence[Mapping[str, Any]]) -> str:
        """Build the full enrichment prompt.

        Args:
            records: Prompt-projected records of one chunk.

        Returns:
            A fully formatted prompt string.
        """
        data = json.dumps(list(records), indent=2, sort_keys=True, default=str)
        return "\n".join(
            [
                _SYSTEM_INSTRUCTIONS,
                "## Output Schema",
                "```json",
                _SCHEMA_JSON,
                "```",
                "",
                _RECORDS_TEMPLATE.format(data=data),
            ]
        )


def extract_prompt_records(prompt: str) -> List[Dict[str, Any]]:
    """Recover the records section of a prompt built by EnrichmentPromptBuilder."""
    match = _RECORDS_PATTERN.search(prompt)
    if match is None:
        return []
    parsed = json.loads(match.group(1))
    return [item for item in parsed if isinstance(item, dict)]
