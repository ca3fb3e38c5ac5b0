"""Structured output schema for record enrichment."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class EnrichedRecord(BaseModel):
    """Enrichment for one canonical record, keyed by its external id."""

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        str_strip_whitespace=True,
    )

    external_id: str = Field(min_length=1)
    actionable_summary: Optional[str] = None
    enhanced_description: Optional[str] = None
    relevance_score: Optional[float] = Field(default=None, ge=0.0, le=10.0)
    relevance_reasoning: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    eligible_applicants: List[str] = Field(default_factory=list)
    eligible_project_types: List[str] = Field(default_factory=list)
    eligible_locations: List[str] = Field(default_factory=list)
    is_national: Optional[bool] = None


class EnrichmentBatch(BaseModel):
    """Output contract for one enrichment chunk."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    records: List[EnrichedRecord]
