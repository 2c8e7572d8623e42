"""Per-site selector catalogs consumed by the generic parsers and handlers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class SelectorCatalog:
    """Where a site keeps its listing and detail data.

    Selector tuples are fallbacks tried in order.
    """

    site_id: str
    base_url: str
    results_ready: str
    results_container: Tuple[str, ...]
    result_row: str
    row_link: Tuple[str, ...] = ("a[href]",)
    row_name: Tuple[str, ...] = ()
    row_fields: Dict[str, str] = field(default_factory=dict)
    column_names: Tuple[str, ...] = ()
    info_text: Tuple[str, ...] = ()
    next_page: Tuple[str, ...] = ()
    source_id_pattern: Optional[str] = None
    detail_ready: Optional[str] = None
