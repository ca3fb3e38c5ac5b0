"""
app/connectors/rest_connector.py

Generic REST connector driven by a Source descriptor.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from app.config import ConnectorHTTPSettings, get_connector_http_settings
from app.connectors.base import HTTPConnector, SourcePage
from app.domain.source import PagingMode, Source
from app.errors import ClientConfigError, ConnectorRequestError
from app.services.fingerprinting import resolve_path

logger = logging.getLogger(__name__)


class RestSourceConnector(HTTPConnector):
    """
    Fetches list pages, and optionally per-item details, from one source.

    Cursors are offsets, page numbers or opaque tokens depending on
    ``Source.paging``; ``None`` always means the first page.
    """

    def __init__(
        self,
        source: Source,
        *,
        http_settings: ConnectorHTTPSettings | None = None,
        session: requests.Session | None = None,
        **kwargs: Any,
    ) -> None:
        if source.paging not in PagingMode.ALL:
            raise ClientConfigError(f"{source.id}: unsupported paging mode {source.paging!r}")
        super().__init__(
            source=source.id,
            http_settings=http_settings or get_connector_http_settings(),
            session=session,
            **kwargs,
        )
        self._config = source

    def fetch_page(self, cursor: Any = None) -> SourcePage:
        config = self._config
        params = dict(config.params)
        if config.paging == PagingMode.OFFSET:
            offset = int(cursor or 0)
            params[config.offset_param] = offset
            params[config.limit_param] = config.page_size
        elif config.paging == PagingMode.PAGE:
            page = int(cursor or 1)
            params[config.page_param] = page
            params[config.limit_param] = config.page_size
        elif config.paging == PagingMode.CURSOR and cursor is not None:
            params[config.cursor_param] = cursor

        method = config.method.upper()
        if method == "POST":
            payload = self._request_json(
                method=method,
                url=config.base_url,
                headers=dict(config.headers),
                json_body=params,
            )
        else:
            payload = self._request_json(
                method=method,
                url=config.base_url,
                params=params,
                headers=dict(config.headers),
            )

        items = self._extract_items(payload)
        has_more, next_cursor = self._next_position(payload, cursor, len(items))
        logger.info(
            "Source page fetched source_id=%s cursor=%s items=%s has_more=%s",
            config.id,
            cursor,
            len(items),
            has_more,
        )
        return SourcePage(items=items, has_more=has_more, next_cursor=next_cursor)

    def fetch_detail(self, item_id: str) -> dict[str, Any]:
        config = self._config
        if not config.detail_url_template:
            raise ClientConfigError(f"{config.id}: source has no detail endpoint")
        url = config.detail_url_template.format(id=item_id)
        payload = self._request_json(method="GET", url=url, headers=dict(config.headers))
        detail = resolve_path(payload, config.detail_path) if config.detail_path else payload
        if not isinstance(detail, dict):
            raise ConnectorRequestError(f"{config.id}: detail response for {item_id} is not an object")
        return detail

    def _extract_items(self, payload: Any) -> list[dict[str, Any]]:
        items = resolve_path(payload, self._config.items_path) if self._config.items_path else payload
        if items is None:
            return []
        if not isinstance(items, list):
            raise ConnectorRequestError(
                f"{self._config.id}: items at {self._config.items_path!r} are not a list"
            )
        dropped = sum(1 for item in items if not isinstance(item, dict))
        if dropped:
            logger.warning("Non-object items dropped source_id=%s count=%s", self._config.id, dropped)
        return [item for item in items if isinstance(item, dict)]

    def _next_position(self, payload: Any, cursor: Any, item_count: int) -> tuple[bool, Any]:
        config = self._config
        if config.paging == PagingMode.NONE:
            return False, None
        if config.paging == PagingMode.CURSOR:
            next_cursor = resolve_path(payload, config.next_cursor_path) if config.next_cursor_path else None
            return bool(next_cursor) and item_count > 0, next_cursor or None
        full_page = item_count >= config.page_size
        if config.paging == PagingMode.OFFSET:
            return full_page, int(cursor or 0) + item_count
        return full_page, int(cursor or 1) + 1
