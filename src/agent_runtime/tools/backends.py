"""Search backends used by the search-class tools.

Backends receive the resolved window as a hint only. Results are always
re-checked by the calling tool, so a backend that ignores the window cannot
leak out-of-window items.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Protocol
from urllib import error, parse, request
from xml.etree import ElementTree

from agent_runtime.temporal.formatting import format_for_query_language
from agent_runtime.temporal.models import AbsoluteDateWindow
from agent_runtime.tools.schemas import SearchHit

logger = logging.getLogger(__name__)

ARXIV_URL = "http://export.arxiv.org/api/query"
ATOM_NS = {"atom": "http://www.w3.org/2005/Atom"}
_TOKEN = re.compile(r"[a-z0-9]+")


class SearchBackend(Protocol):
    name: str

    def search(
        self,
        query: str,
        *,
        max_results: int,
        window: AbsoluteDateWindow | None,
    ) -> list[SearchHit]: ...


DEFAULT_CORPUS: tuple[dict[str, Any], ...] = (
    {
        "title": "Scaling Laws for Retrieval-Augmented Language Models",
        "url": "https://example.org/papers/rag-scaling",
        "snippet": "Retrieval augmented generation scaling study across corpus sizes.",
        "published": "2025-11-03",
        "source": "paper",
        "authors": ["A. Rivera", "K. Osei"],
    },
    {
        "title": "Tool-Using Agents: A Survey",
        "url": "https://example.org/papers/tool-agents-survey",
        "snippet": "Survey of language model agents that call external tools and APIs.",
        "published": "2025-06-18",
        "source": "paper",
        "authors": ["M. Chen"],
    },
    {
        "title": "Guardrails for Long-Running Agent Loops",
        "url": "https://example.org/papers/agent-guardrails",
        "snippet": "Step limits, search caps and failure streaks for agent tool loops.",
        "published": "2024",
        "source": "paper",
        "authors": ["L. Novak", "P. Singh"],
    },
    {
        "title": "Temporal Filtering in Web Search Pipelines",
        "url": "https://example.org/blog/temporal-filtering",
        "snippet": "How publication dates drift between search indexes and source pages.",
        "published": "2026-01-21T09:30:00Z",
        "source": "web",
    },
    {
        "title": "Agent frameworks roundup",
        "url": "https://example.org/news/agent-frameworks",
        "snippet": "News on agent frameworks, tool calling and evaluation harnesses.",
        "published": None,
        "source": "web",
    },
)


class InMemorySearchBackend:
    """Deterministic keyword backend for offline mode and tests.

    Every call is appended to ``calls`` so callers can inspect exactly which
    query and window were sent.
    """

    def __init__(self, documents: list[SearchHit] | None = None, *, name: str = "offline") -> None:
        self.name = name
        self.documents = (
            documents
            if documents is not None
            else [SearchHit.model_validate(doc) for doc in DEFAULT_CORPUS]
        )
        self.calls: list[dict[str, Any]] = []

    def search(
        self,
        query: str,
        *,
        max_results: int,
        window: AbsoluteDateWindow | None,
    ) -> list[SearchHit]:
        self.calls.append({"query": query, "max_results": max_results, "window": window})
        terms = set(_TOKEN.findall(query.lower()))
        scored: list[tuple[int, int, SearchHit]] = []
        for position, doc in enumerate(self.documents):
            text = f"{doc.title} {doc.snippet}".lower()
            score = sum(1 for term in terms if term in text)
            if score:
                scored.append((-score, position, doc))
        scored.sort(key=lambda item: (item[0], item[1]))
        return [doc for _, _, doc in scored[:max_results]]


class ArxivSearchBackend:
    """arXiv Atom API; the window is sent as an explicit ``submittedDate`` range."""

    name = "arxiv"

    def __init__(
        self,
        *,
        base_url: str = ARXIV_URL,
        timeout_s: float = 15.0,
        max_retries: int = 1,
        backoff_s: float = 0.5,
    ) -> None:
        self.base_url = base_url
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    def search(
        self,
        query: str,
        *,
        max_results: int,
        window: AbsoluteDateWindow | None,
    ) -> list[SearchHit]:
        search_query = f"all:{query}"
        if window is not None:
            search_query += f" AND submittedDate:{format_for_query_language(window)}"
        params = parse.urlencode(
            {
                "search_query": search_query,
                "start": 0,
                "max_results": min(max_results, 100),
                "sortBy": "relevance",
                "sortOrder": "descending",
            }
        )
        body = self._get(f"{self.base_url}?{params}")
        return parse_arxiv_feed(body)

    def _get(self, url: str) -> str:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            req = request.Request(url, headers={"User-Agent": "agent-runtime/0.1"}, method="GET")
            try:
                with request.urlopen(req, timeout=self.timeout_s) as response:
                    return response.read().decode("utf-8")
            except error.HTTPError as exc:
                last_error = exc
                if exc.code < 500:
                    break
            except error.URLError as exc:
                last_error = exc
            if attempt < self.max_retries:
                logger.warning("arXiv request failed attempt=%d error=%s", attempt + 1, last_error)
                if self.backoff_s > 0:
                    time.sleep(self.backoff_s * (attempt + 1))
        raise RuntimeError(f"arXiv request failed: {last_error}")


def parse_arxiv_feed(body: str) -> list[SearchHit]:
    root = ElementTree.fromstring(body)
    hits: list[SearchHit] = []
    for entry in root.findall("atom:entry", ATOM_NS):
        title = _text(entry, "atom:title")
        entry_id = _text(entry, "atom:id")
        if not title or not entry_id:
            continue
        arxiv_id = re.sub(r"v\d+$", "", entry_id.rsplit("/", 1)[-1])
        published = _text(entry, "atom:published")
        hits.append(
            SearchHit(
                title=" ".join(title.split()),
                url=f"https://arxiv.org/abs/{arxiv_id}",
                snippet=" ".join((_text(entry, "atom:summary") or "").split())[:1000],
                published=published[:10] if published else None,
                source="arxiv",
                authors=[
                    name.text.strip()
                    for name in entry.findall("atom:author/atom:name", ATOM_NS)
                    if name.text and name.text.strip()
                ],
            )
        )
    return hits


def _text(node: ElementTree.Element, path: str) -> str | None:
    found = node.find(path, ATOM_NS)
    if found is None or found.text is None:
        return None
    return found.text.strip()
