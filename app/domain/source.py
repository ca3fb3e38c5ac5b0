"""
app/domain/source.py

Upstream source descriptor consumed read-only by the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class PagingMode:
    OFFSET = "offset"
    PAGE = "page"
    CURSOR = "cursor"
    NONE = "none"

    ALL = frozenset({OFFSET, PAGE, CURSOR, NONE})


@dataclass(frozen=True)
class Source:
    """
    Identity, endpoint and response-shape mapping for one upstream system.

    ``response_mapping`` maps canonical field names to dotted paths in the
    upstream payload (``{"title": "attributes.name"}``).
    ``force_full_reprocessing`` makes every run re-enrich and update records
    that deduplication would otherwise skip.
    """

    id: str
    name: str
    base_url: str
    enabled: bool = True
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    items_path: str = ""
    paging: str = PagingMode.OFFSET
    page_size: int = 100
    offset_param: str = "offset"
    limit_param: str = "limit"
    page_param: str = "page"
    cursor_param: str = "cursor"
    next_cursor_path: str = ""
    detail_url_template: str | None = None
    detail_path: str = ""
    id_field: str = "id"
    response_mapping: dict[str, str] = field(default_factory=dict)
    amount_change_threshold: float | None = None
    force_full_reprocessing: bool = False

    @property
    def is_two_step(self) -> bool:
        return bool(self.detail_url_template)
