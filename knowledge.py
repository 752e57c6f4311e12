import json
import os
import re
from typing import Any, Dict, List, Optional

from utils import logger

RAG_CHUNKS_PATH = os.getenv("RAG_CHUNKS_PATH", "rag_chunks.json")
CONTEXT_SNIPPET_CHARS = 800
PREVIEW_CHARS = 200

_STRIP_RE = re.compile(r"[^A-Za-z0-9_가-힣\s]")


class KnowledgeBase:
    """Keyword-overlap lookup over pre-chunked reference books.

    Each chunk is ``{"book": str, "content": str}``. Scoring is deliberately
    naive: two points per keyword occurrence in the content plus five when
    the keyword appears in the book title.
    """

    def __init__(self, chunks: Optional[List[Dict[str, Any]]] = None):
        self.chunks: List[Dict[str, Any]] = chunks or []

    @property
    def enabled(self) -> bool:
        return bool(self.chunks)

    @property
    def books(self) -> List[str]:
        seen: List[str] = []
        for chunk in self.chunks:
            book = chunk.get("book", "")
            if book and book not in seen:
                seen.append(book)
        return seen

    def load(self, path: str = RAG_CHUNKS_PATH) -> int:
        """Load chunks from *path*; a missing or unreadable file disables lookup."""
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            logger.info(f"📚 [RAG] No knowledge base at {path} – lookup disabled")
            self.chunks = []
            return 0
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"❌ [RAG] Failed to load knowledge base {path}: {e}")
            self.chunks = []
            return 0

        self.chunks = [
            c for c in data
            if isinstance(c, dict) and isinstance(c.get("content"), str)
        ] if isinstance(data, list) else []
        logger.info(f"📚 [RAG] Loaded {len(self.chunks)} knowledge chunks")
        return len(self.chunks)

    @staticmethod
    def keywords(query: str) -> List[str]:
        cleaned = _STRIP_RE.sub("", (query or "").lower())
        return [w for w in cleaned.split() if len(w) >= 2]

    def search(self, query: str, top_k: int = 5) -> List[Dict[str, Any]]:
        if not self.chunks:
            return []
        keywords = self.keywords(query)
        if not keywords:
            return []

        scored = []
        for chunk in self.chunks:
            content = chunk["content"].lower()
            book = str(chunk.get("book", "")).lower()
            score = 0
            for keyword in keywords:
                score += content.count(keyword) * 2
                if keyword in book:
                    score += 5
            if score > 0:
                scored.append({**chunk, "score": score})

        scored.sort(key=lambda c: c["score"], reverse=True)
        return scored[:top_k]

    @staticmethod
    def format_context(chunks: List[Dict[str, Any]]) -> str:
        if not chunks:
            return ""
        return "\n\n".join(
            f"[참고자료 {idx}] 출처: {chunk.get('book', '')}\n{chunk['content'][:CONTEXT_SNIPPET_CHARS]}..."
            for idx, chunk in enumerate(chunks, start=1)
        )

    def lookup_context(self, query: str, top_k: int = 3) -> str:
        """Search and format in one step; empty string when nothing matches."""
        results = self.search(query, top_k)
        if results:
            logger.info(f"📚 [RAG] {len(results)} chunks matched")
        return self.format_context(results)


# Create singleton instance; populated from disk in the app lifespan
knowledge_base = KnowledgeBase()
