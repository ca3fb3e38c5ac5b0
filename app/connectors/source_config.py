"""
app/connectors/source_config.py

Loads Source descriptors from a JSON configuration file.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.domain.source import PagingMode, Source
from app.errors import ClientConfigError

logger = logging.getLogger(__name__)


class SourceConfigModel(BaseModel):
    """
    Validation model for one entry of the sources file.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    base_url: str = Field(..., min_length=1)
    enabled: bool = True
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict)
    items_path: str = ""
    paging: str = PagingMode.OFFSET
    page_size: int = Field(100, ge=1)
    offset_param: str = "offset"
    limit_param: str = "limit"
    page_param: str = "page"
    cursor_param: str = "cursor"
    next_cursor_path: str = ""
    detail_url_template: str | None = None
    detail_path: str = ""
    id_field: str = "id"
    response_mapping: dict[str, str] = Field(default_factory=dict)
    amount_change_threshold: float | None = Field(None, ge=0.0)
    force_full_reprocessing: bool = False

    @field_validator("paging")
    @classmethod
    def _known_paging(cls, value: str) -> str:
        if value not in PagingMode.ALL:
            raise ValueError(f"paging must be one of {sorted(PagingMode.ALL)}")
        return value

    @field_validator("method")
    @classmethod
    def _known_method(cls, value: str) -> str:
        method = value.upper()
        if method not in {"GET", "POST"}:
            raise ValueError("method must be GET or POST")
        return method

    def to_source(self) -> Source:
        return Source(**self.model_dump())


def parse_sources(raw: Any) -> list[Source]:
    """
    Validate decoded configuration into Source descriptors.

    Raises:
        ClientConfigError: If the configuration is malformed or ids repeat.
    """

    entries = raw.get("sources") if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ClientConfigError("Source configuration must be a list or an object with 'sources'.")

    sources: list[Source] = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        try:
            source = SourceConfigModel.model_validate(entry).to_source()
        except ValidationError as exc:
            raise ClientConfigError(f"Invalid source configuration at index {index}: {exc}") from exc
        if source.id in seen:
            raise ClientConfigError(f"Duplicate source id in configuration: {source.id}")
        seen.add(source.id)
        sources.append(source)
    return sources


def load_sources(config_path: str | Path) -> list[Source]:
    """
    Read and validate the sources file at ``config_path``.
    """

    path = Path(config_path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ClientConfigError(f"Source configuration not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ClientConfigError(f"Source configuration is not valid JSON: {path}: {exc}") from exc

    sources = parse_sources(raw)
    logger.info(
        "Sources loaded path=%s total=%s enabled=%s",
        path,
        len(sources),
        sum(1 for source in sources if source.enabled),
    )
    return sources


def find_source(sources: list[Source], name_or_id: str) -> Source:
    for source in sources:
        if name_or_id in {source.id, source.name}:
            return source
    raise ClientConfigError(f"Unknown source: {name_or_id}")
