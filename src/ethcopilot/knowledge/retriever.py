import logging
from typing import List, Protocol

import openai
from openai import AsyncOpenAI

from ..errors import EmbeddingUnavailable, RetrievalError
from ..settings import get_settings
from .index import KnowledgeIndex, Passage

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class OpenAIEmbedder:
    """Embeds text with the OpenAI embeddings endpoint."""

    def __init__(self, client: AsyncOpenAI, model: str) -> None:
        self._client = client
        self._model = model

    async def embed(self, text: str) -> List[float]:
        try:
            response = await self._client.embeddings.create(model=self._model, input=text)
        except openai.OpenAIError as e:
            raise EmbeddingUnavailable(f"Embedding request failed: {e}") from e
        try:
            return list(response.data[0].embedding)
        except (AttributeError, IndexError) as e:
            raise EmbeddingUnavailable(f"Embedding response malformed: {e}") from e


def get_embedder() -> OpenAIEmbedder:
    settings = get_settings()
    client = AsyncOpenAI(
        api_key=settings.embedding_api_key or settings.openai_api_key,
        base_url=settings.embedding_base_url or settings.openai_base_url,
        timeout=settings.reasoning_timeout_seconds,
    )
    return OpenAIEmbedder(client, settings.embedding_model)


class Retriever:
    """Ranks knowledge passages for a query, most relevant first."""

    def __init__(self, index: KnowledgeIndex, embedder: Embedder) -> None:
        self._index = index
        self._embedder = embedder

    @property
    def index(self) -> KnowledgeIndex:
        return self._index

    async def retrieve(self, query: str, k: int, source: str | None = None) -> List[Passage]:
        """Return at most ``k`` passages for ``query``.

        Raises:
            EmbeddingUnavailable: the embedding capability failed.
            RetrievalError: the query vector does not fit the index.
        """
        if k <= 0 or len(self._index) == 0:
            return []
        vector = await self._embedder.embed(query)
        try:
            scored = self._index.search(vector, k, source=source)
        except ValueError as e:
            raise RetrievalError(str(e)) from e
        logger.debug(
            "Retrieved %d passages for %r: %s",
            len(scored),
            query[:80],
            [f"{s.passage.passage_id}={s.score:.3f}" for s in scored],
        )
        return [s.passage for s in scored]
