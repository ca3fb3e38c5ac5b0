"""
app/connectors package marker.
"""

from app.connectors.base import HTTPConnector, SourceConnector, SourcePage
from app.connectors.rest_connector import RestSourceConnector
from app.connectors.source_config import find_source, load_sources, parse_sources

__all__ = [
    "HTTPConnector",
    "RestSourceConnector",
    "SourceConnector",
    "SourcePage",
    "find_source",
    "load_sources",
    "parse_sources",
]
