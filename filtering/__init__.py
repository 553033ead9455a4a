"""
Filter expression language

Parses caller-supplied filter strings and translates them into Elasticsearch
query DSL.
"""

from filtering.filtering import Filterer, escape_query_string
from filtering.parser import FilterError, parse

__all__ = [
    "Filterer",
    "FilterError",
    "escape_query_string",
    "parse",
]
