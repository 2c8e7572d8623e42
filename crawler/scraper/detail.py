"""Detail-page extraction into canonical records."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

from bs4 import BeautifulSoup

from crawler.models import CandidateRecord, ExtractedRecord

from .html import absolute_url, make_soup

LOGGER = logging.getLogger(__name__)

FieldParser = Callable[[BeautifulSoup, CandidateRecord], Dict[str, Any]]


def dedupe_images(urls: Iterable[Optional[str]], base_url: str = "") -> List[str]:
    """Order-preserving image de-duplication.

    URLs are resolved against ``base_url``; query strings and fragments are
    ignored when comparing, so size variants of one asset collapse to the
    first one seen. ``data:`` URIs are dropped.
    """
    seen: set[str] = set()
    result: List[str] = []
    for raw in urls:
        if not raw or raw.strip().startswith("data:"):
            continue
        url = absolute_url(raw.strip(), base_url) if base_url else raw.strip()
        if url is None:
            continue
        if url.startswith("//"):
            url = f"https:{url}"
        parts = urlsplit(url)
        key = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))
        if key in seen:
            continue
        seen.add(key)
        result.append(url)
    return result


class DetailExtractor:
    """Builds an :class:`ExtractedRecord` from a candidate and its detail HTML.

    Field extraction is delegated to ``field_parser``; this class owns the
    merge with candidate data and the missing-field policy. Records with
    missing mandatory fields are still returned, with a WARN log.
    """

    def __init__(
        self,
        site_id: str,
        field_parser: FieldParser,
        *,
        base_url: str = "",
        mandatory_fields: Sequence[str] = ("name",),
    ) -> None:
        self.site_id = site_id
        self.field_parser = field_parser
        self.base_url = base_url
        self.mandatory_fields = tuple(mandatory_fields)

    def extract(
        self,
        candidate: CandidateRecord,
        html: str,
        *,
        execution_id: Optional[str] = None,
        on_warning: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ) -> ExtractedRecord:
        soup = make_soup(html)
        try:
            fields = self.field_parser(soup, candidate) or {}
        except Exception as exc:
            # A broken field parser degrades to a candidate-only record.
            LOGGER.warning("%s: field parser failed for %s: %s", self.site_id, candidate.detail_url, exc)
            fields = {}
        return self.build_record(candidate, fields, execution_id=execution_id, on_warning=on_warning)

    def build_record(
        self,
        candidate: CandidateRecord,
        fields: Dict[str, Any],
        *,
        execution_id: Optional[str] = None,
        on_warning: Optional[Callable[[str, Dict[str, Any]], None]] = None,
    ) -> ExtractedRecord:
        fields = dict(fields)
        attributes = {**candidate.attributes, **(fields.pop("attributes", None) or {})}
        identifiers = fields.pop("identifiers", None) or {}
        images = dedupe_images(fields.pop("images", None) or [], self.base_url)
        for key in ("url", "site", "execution_id"):
            fields.pop(key, None)
        for key in [key for key in fields if key not in ExtractedRecord.model_fields]:
            attributes[key] = fields.pop(key)

        record = ExtractedRecord(
            url=candidate.detail_url,
            site=self.site_id,
            execution_id=execution_id,
            source_id=fields.pop("source_id", None) or candidate.source_id,
            name=fields.pop("name", None) or candidate.name or None,
            images=images,
            identifiers=identifiers,
            attributes=attributes,
            **fields,
        )

        missing = [name for name in self.mandatory_fields if not getattr(record, name, None)]
        if missing:
            context = {"url": record.url, "missing": missing}
            LOGGER.warning("%s: record missing mandatory field(s) %s: %s", self.site_id, missing, record.url)
            if on_warning is not None:
                on_warning(f"Record missing mandatory field(s): {', '.join(missing)}", context)
        return record
