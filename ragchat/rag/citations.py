"""
Citation aggregation

Merges per-chunk attributions into one citation per source document, keyed
by normalized URL, then normalized title, then position.
"""
from typing import Dict, List, Sequence, Union
import json

from .rag_types import Citation, ContextItem, RetrievedItem

CITATIONS_SENTINEL = "\n\n--- begin citations ---\n"


def _normalize(value) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def citation_key(item: Union[ContextItem, RetrievedItem], index: int) -> str:
    url = _normalize(item.source_url)
    if url:
        return f"url:{url}"
    title = _normalize(item.title)
    if title:
        return f"title:{title}"
    return f"idx:{index}"


def aggregate_citations(items: Sequence[Union[ContextItem, RetrievedItem]]) -> List[Citation]:
    """Output keeps first-occurrence order"""
    buckets: Dict[str, Citation] = {}

    for index, item in enumerate(items):
        key = citation_key(item, index)
        citation = buckets.get(key)
        if citation is None:
            citation = Citation()
            buckets[key] = citation

        if not citation.doc_id and item.doc_id:
            citation.doc_id = item.doc_id
        if not citation.title and (item.title or "").strip():
            citation.title = item.title.strip()
        if not citation.source_url and (item.source_url or "").strip():
            citation.source_url = item.source_url.strip()

        metadata = item.item.metadata if isinstance(item, ContextItem) else item.metadata
        own_count = metadata.get("excerpt_count")
        citation.excerpt_count += own_count if isinstance(own_count, int) and own_count > 0 else 1

    return list(buckets.values())


def format_citations_block(citations: Sequence[Citation]) -> str:
    payload = json.dumps([c.to_dict() for c in citations], ensure_ascii=False)
    return f"{CITATIONS_SENTINEL}{payload}"
