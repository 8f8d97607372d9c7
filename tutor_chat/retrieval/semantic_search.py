"""
Semantic search over pre-computed video chunk embeddings.

Chunk embeddings are produced by the ingestion side and stored in pgvector.
Here we only embed the learner's query and run the similarity query.
"""
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, Union
import time

from openai import OpenAI
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from tutor_chat.errors import RetrieverContractError
from tutor_chat.logging_config import get_logger
from tutor_chat.models import RetrievedChunk

logger = get_logger(__name__)


class ContextRetriever(Protocol):
    """Returns chunks ordered by similarity descending, similarity in [0, 1]."""

    def search(self, query: str, scope: Optional[Sequence[str]] = None) -> List[RetrievedChunk]:
        ...


def validate_chunks(rows: Iterable[Union[RetrievedChunk, Mapping[str, Any]]]) -> List[RetrievedChunk]:
    """Fail fast on malformed retriever output before it reaches prompt assembly."""
    chunks = []
    for row in rows:
        if isinstance(row, RetrievedChunk):
            if not row.source_id or row.text is None:
                raise RetrieverContractError(f"Retrieved chunk is missing source_id/text: {row!r}")
            if not 0.0 <= row.similarity <= 1.0:
                raise RetrieverContractError(f"Similarity out of range for {row.source_id}: {row.similarity}")
            chunks.append(row)
        elif isinstance(row, Mapping):
            chunks.append(RetrievedChunk.from_mapping(row))
        else:
            raise RetrieverContractError(f"Unexpected retriever row type: {type(row).__name__}")
    return chunks


class OpenAIQueryEmbedder:
    """Embeds a single query with the same model used for the chunk embeddings."""

    def __init__(self, client: OpenAI, model: str = "text-embedding-3-small"):
        self.client = client
        self.model = model

    def __call__(self, query: str) -> List[float]:
        response = self.client.embeddings.create(model=self.model, input=query)
        return response.data[0].embedding


SEARCH_SQL = """
select
  vc.video_id::text as source_id
, v.title as source_title
, vc.start_time_seconds as start_offset_seconds
, vc.chunk_text as text
, 1 - (vc.embedding <=> :query_vector) as similarity

from video_chunks vc
join videos v
  on vc.video_id = v.id
where vc.embedding is not null
  and 1 - (vc.embedding <=> :query_vector) > :similarity_threshold
  {scope_filter}
order by vc.embedding <=> :query_vector asc
limit :match_count
"""


class PgVectorRetriever:
    """ContextRetriever over the video_chunks pgvector table."""

    def __init__(
        self,
        engine: Engine,
        embed_query: Callable[[str], List[float]],
        match_count: int = 5,
        similarity_threshold: float = 0.7,
    ):
        self.engine = engine
        self.embed_query = embed_query
        self.match_count = match_count
        self.similarity_threshold = similarity_threshold

    def search(self, query: str, scope: Optional[Sequence[str]] = None) -> List[RetrievedChunk]:
        embed_start = time.time()
        query_embedding = self.embed_query(query)
        embed_time = (time.time() - embed_start) * 1000
        logger.info(f"  Query embedding time: {embed_time:.0f}ms")

        params = {
            "query_vector": str(query_embedding),
            "similarity_threshold": self.similarity_threshold,
            "match_count": self.match_count,
        }
        scope_filter = ""
        if scope:
            scope_filter = "and vc.video_id::text = any(:scope_ids)"
            params["scope_ids"] = list(scope)

        search_start = time.time()
        with Session(self.engine) as session:
            rows = session.execute(text(SEARCH_SQL.format(scope_filter=scope_filter)), params).mappings().all()
        search_time = (time.time() - search_start) * 1000
        logger.info(f"  Vector search time: {search_time:.0f}ms ({len(rows)} chunks)")

        return validate_chunks(rows)
