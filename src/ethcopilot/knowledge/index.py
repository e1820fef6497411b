"""In-memory knowledge index over pre-embedded document chunks.

Passages are produced offline by the ingestion step and bulk-loaded once at
startup. After construction the index is read-only, so concurrent searches from
many sessions need no locking.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Passage:
    passage_id: str
    title: str
    text: str
    embedding: Tuple[float, ...]
    source: str
    offset: int = 0

    def to_dict(self) -> Dict[str, object]:
        """JSON form without the embedding, for prompts and tool results."""
        return {
            "id": self.passage_id,
            "title": self.title,
            "text": self.text,
            "source": self.source,
            "offset": self.offset,
        }


@dataclass(frozen=True)
class ScoredPassage:
    passage: Passage
    score: float


class KnowledgeIndex:
    """Stores passages in insertion order and answers cosine nearest-neighbour queries."""

    def __init__(self, passages: Sequence[Passage] = ()) -> None:
        self._passages: List[Passage] = list(passages)
        self._by_id: Dict[str, Passage] = {p.passage_id: p for p in self._passages}
        if self._passages:
            matrix = np.array([p.embedding for p in self._passages], dtype=np.float64)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            self._matrix = matrix / norms
        else:
            self._matrix = np.zeros((0, 0), dtype=np.float64)

    def __len__(self) -> int:
        return len(self._passages)

    @property
    def dimensions(self) -> int:
        return int(self._matrix.shape[1]) if len(self._passages) else 0

    def all_passages(self) -> List[Passage]:
        return list(self._passages)

    def get(self, passage_id: str) -> Passage | None:
        return self._by_id.get(passage_id)

    def search(
        self,
        vector: Sequence[float],
        k: int,
        source: str | None = None,
    ) -> List[ScoredPassage]:
        """Return up to ``k`` passages by cosine similarity, most similar first.

        Equal scores keep insertion order. ``source`` restricts results to
        passages whose source starts with that prefix.
        """
        if k <= 0 or not self._passages:
            return []

        query = np.asarray(vector, dtype=np.float64)
        if query.shape != (self.dimensions,):
            raise ValueError(
                f"Query has {query.size} dimensions, index has {self.dimensions}"
            )
        norm = np.linalg.norm(query)
        if norm == 0:
            scores = np.zeros(len(self._passages))
        else:
            scores = self._matrix @ (query / norm)

        # Stable sort on negated scores: ties stay in insertion order.
        order = np.argsort(-scores, kind="stable")
        results: List[ScoredPassage] = []
        for idx in order:
            passage = self._passages[int(idx)]
            if source and not passage.source.startswith(source):
                continue
            results.append(ScoredPassage(passage=passage, score=float(scores[idx])))
            if len(results) >= k:
                break
        return results


def load_index(path: Path) -> KnowledgeIndex:
    """Load a JSON-lines passage file written by the ingestion scripts.

    Each line holds ``id``, ``title``, ``text``, ``embedding``, ``source`` and
    ``offset``. A missing file yields an empty index; bad lines are skipped.
    """
    if not path.exists():
        logger.warning("Knowledge index %s not found; answers will be ungrounded", path)
        return KnowledgeIndex()

    passages: List[Passage] = []
    dimensions: int | None = None
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                embedding = tuple(float(x) for x in data["embedding"])
                passage = Passage(
                    passage_id=str(data.get("id") or f"{data['source']}#{data.get('offset', 0)}"),
                    title=str(data.get("title", "")),
                    text=str(data["text"]),
                    embedding=embedding,
                    source=str(data["source"]),
                    offset=int(data.get("offset", 0)),
                )
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed passage at %s:%d: %s", path, line_no, e)
                continue
            if dimensions is None:
                dimensions = len(embedding)
            elif len(embedding) != dimensions:
                logger.warning(
                    "Skipping passage %s at %s:%d: %d dimensions, expected %d",
                    passage.passage_id,
                    path,
                    line_no,
                    len(embedding),
                    dimensions,
                )
                continue
            passages.append(passage)

    logger.info("Loaded %d passages from %s", len(passages), path)
    return KnowledgeIndex(passages)
