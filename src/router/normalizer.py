"""
Response normalizer: raw adapter events -> canonical payload chunks.

Following PROJECT_RULES.md:
- Single responsibility: map and enrich, no network I/O
- Text deltas are forwarded in emission order
- Enrichment chunks follow the text they belong to
"""

import html
import re
from typing import Any, List, Optional
from urllib.parse import urlparse

from adapters.base import AdapterResponse, EventKind
from common.logging import get_logger
from common.models import AsyncJob, PayloadChunk

logger = get_logger(__name__)

PARTIAL_TIMEOUT_NOTE = "\n\n(Response was incomplete - timed out)"

CITATION_MARKER = re.compile(r"\[(\d+)\]")

REWRITE_NOTICE = (
    "**Citations converted to clickable links. "
    "Click any citation number to visit the source directly.**\n\n"
)

_MAX_DISPLAY_URL = 50


def has_citation_markers(text: str) -> bool:
    return CITATION_MARKER.search(text) is not None


def rewrite_citations(text: str, urls: List[str]) -> str:
    """Turn each `[n]` into `[n](url)` using the 1-indexed citation list."""

    def _link(match: "re.Match[str]") -> str:
        index = int(match.group(1)) - 1
        if 0 <= index < len(urls):
            return f"[{match.group(1)}]({urls[index]})"
        return match.group(0)

    return CITATION_MARKER.sub(_link, text)


def display_url(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.netloc:
        return url
    shown = parsed.netloc + parsed.path.rstrip("/")
    if len(shown) > _MAX_DISPLAY_URL:
        shown = shown[: _MAX_DISPLAY_URL - 3] + "..."
    return shown


def render_sources_html(urls: List[str]) -> str:
    """HTML list of sources shown under a cited answer."""
    items = "".join(
        f'<li class="text-sm"><a href="{html.escape(url, quote=True)}" target="_blank" '
        f'rel="noopener noreferrer" class="text-blue-600 hover:underline break-words">'
        f"{html.escape(display_url(url))}</a></li>"
        for url in urls
    )
    return (
        '<div class="p-3 bg-gray-50 rounded-md mt-2 border border-gray-200">'
        '<p class="text-sm font-semibold mb-2">Sources:</p>'
        f'<ul class="list-disc pl-5 space-y-1">{items}</ul></div>'
    )


def citation_chunks(text: str, urls: List[str]) -> List[PayloadChunk]:
    """
    Chunks appended after a cited answer.

    Order: the citation list, the rewritten answer (only when a marker was
    actually replaced), then a grounding chunk with the sources list.
    """
    if not urls:
        return []

    chunks = [PayloadChunk.citations(urls)]
    marked = has_citation_markers(text)
    if marked:
        updated = rewrite_citations(text, urls)
        if updated != text:
            chunks.extend(
                PayloadChunk.text_delta(part)
                for part in ("\n\n", "---\n", REWRITE_NOTICE, updated)
            )

    label = "View Sources" if marked else f"Sources ({len(urls)})"
    chunks.append(PayloadChunk.grounding([label], render_sources_html(urls)))
    return chunks


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def extract_grounding(metadata: Any) -> Optional[PayloadChunk]:
    """
    Grounding chunk from SDK grounding metadata, or None when it carries nothing.

    Accepts the SDK message object or a plain dict with the same field names.
    """
    queries = [str(q) for q in (_field(metadata, "web_search_queries") or [])]
    rendered = _field(_field(metadata, "search_entry_point"), "rendered_content") or None
    if not queries and not rendered:
        return None
    return PayloadChunk.grounding(queries, rendered)


class ResponseNormalizer:
    """
    Per-request mapper from AdapterResponse events to PayloadChunk values.

    Keeps the text emitted so far so citation rewrites operate on the full answer.
    """

    def __init__(self, provider: str, request_id: str = ""):
        self.provider = provider
        self.request_id = request_id
        self._text_parts: List[str] = []
        self.chunks_emitted = 0
        self.finish_reason: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    def process(self, event: AdapterResponse) -> List[PayloadChunk]:
        chunks = self._map(event)
        self.chunks_emitted += len(chunks)
        return chunks

    def _map(self, event: AdapterResponse) -> List[PayloadChunk]:
        kind = event.kind

        if kind == EventKind.TEXT_DELTA:
            if not event.content:
                return []
            self._text_parts.append(event.content)
            return [PayloadChunk.text_delta(event.content)]

        if kind == EventKind.GROUNDING:
            chunk = extract_grounding(event.metadata.get("grounding_metadata"))
            return [chunk] if chunk is not None else []

        if kind == EventKind.CITATIONS:
            urls = list(event.metadata.get("urls") or [])
            logger.info(
                event="citations_resolved",
                request_id=self.request_id,
                provider=self.provider,
                origin=event.metadata.get("origin"),
                count=len(urls),
            )
            return citation_chunks(self.text, urls)

        if kind == EventKind.IMAGE:
            return [
                PayloadChunk.image(
                    event.metadata["image_base64"],
                    event.metadata["mime_type"],
                    caption=event.content,
                )
            ]

        if kind == EventKind.JOB:
            job: AsyncJob = event.metadata["job"]
            return [PayloadChunk.job_handle(job, text=event.content)]

        if kind == EventKind.PARTIAL_TIMEOUT:
            logger.warning(
                event="response_partial_timeout",
                request_id=self.request_id,
                provider=self.provider,
                text_length=len(self.text),
            )
            return [PayloadChunk.text_delta(PARTIAL_TIMEOUT_NOTE)]

        # COMPLETION
        self.finish_reason = event.finish_reason
        return []
