"""
Canonical source URL resolution

Vector-search rows carry doc ids and URLs under several key spellings. The
resolver picks the first candidate that looks like a page id, consults the
canonical lookup table, and otherwise rewrites workspace-hosted URLs to the
public site.
"""
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlparse
import json
import logging
import re

logger = logging.getLogger(__name__)

DOC_ID_KEYS = ("doc_id", "docId", "document_id", "documentId", "id")
URL_KEYS = ("source_url", "sourceUrl", "url")
WORKSPACE_HOSTS = ("notion.so", "notion.site")

_HEX_ID = re.compile(r"([0-9a-f]{32})$")
_DASHED_ID = re.compile(r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$")


def normalize_page_id(value: Any) -> Optional[str]:
    """Return the 32-hex page id embedded at the end of a value, if any"""
    if not isinstance(value, str):
        return None
    text = value.strip().lower().split("?")[0].rstrip("/")
    if not text:
        return None

    dashed = _DASHED_ID.search(text)
    if dashed:
        return dashed.group(1).replace("-", "")
    plain = _HEX_ID.search(text)
    return plain.group(1) if plain else None


def normalize_url(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    url = value.strip()
    if not url:
        return None
    if url.startswith("//"):
        return f"https:{url}"
    if not re.match(r"^[a-z][a-z0-9+.-]*://", url, re.IGNORECASE):
        return f"https://{url.lstrip('/')}"
    return url


def collect_candidates(row: Mapping[str, Any], keys: Iterable[str]) -> list:
    metadata = row.get("metadata") if isinstance(row.get("metadata"), Mapping) else {}
    values = []
    for source in (row, metadata):
        for key in keys:
            value = source.get(key)
            if isinstance(value, str) and value.strip():
                values.append(value.strip())
    return values


class CanonicalUrlLookup:
    """
    Doc-id to canonical URL table

    Loaded from a JSON object file (``{"<page id>": "<url>"}``) when a path is
    configured.
    """

    def __init__(self, mapping: Optional[Dict[str, str]] = None, site_url: Optional[str] = None):
        self._mapping: Dict[str, str] = {}
        for key, url in (mapping or {}).items():
            page_id = normalize_page_id(key)
            if page_id and url:
                self._mapping[page_id] = url
        self.site_url = site_url.rstrip("/") if site_url else None

    @classmethod
    def from_file(cls, path: Optional[str], site_url: Optional[str] = None) -> "CanonicalUrlLookup":
        if not path:
            return cls(site_url=site_url)
        try:
            with open(path, "r", encoding="utf-8") as f:
                mapping = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"canonical URL map unavailable ({path}): {e}")
            mapping = {}
        return cls(mapping, site_url=site_url)

    def resolve(self, doc_id_candidates: Iterable[str], url_candidates: Iterable[str]) -> Tuple[Optional[str], Optional[str]]:
        """Best-effort ``(doc_id, source_url)``; either may be None"""
        doc_id_candidates = list(doc_id_candidates)
        url_candidates = list(url_candidates)
        doc_id = None
        for candidate in doc_id_candidates + url_candidates:
            doc_id = normalize_page_id(candidate)
            if doc_id:
                break

        if doc_id and doc_id in self._mapping:
            return doc_id, normalize_url(self._mapping[doc_id])

        raw_url = next((u for u in url_candidates if u), None)
        url = normalize_url(raw_url)
        if url and doc_id and self.site_url:
            host = (urlparse(url).hostname or "").lower()
            if any(h in host for h in WORKSPACE_HOSTS):
                url = f"{self.site_url}/{doc_id}"

        if doc_id is None and doc_id_candidates:
            doc_id = doc_id_candidates[0]
        return doc_id, url

    def enrich(self, row: Mapping[str, Any], metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Write the resolved ``doc_id``/``source_url`` and a ``title`` into metadata"""
        doc_ids = collect_candidates(row, DOC_ID_KEYS)
        urls = collect_candidates(row, URL_KEYS)
        doc_id, url = self.resolve(doc_ids, urls)

        metadata["doc_id"] = doc_id
        metadata["source_url"] = url
        title = metadata.get("title") or row.get("title")
        metadata["title"] = title.strip() if isinstance(title, str) and title.strip() else None
        return metadata
