"""
Response cache for answered questions, backed by Redis.

Entries are keyed on the normalized question plus a fingerprint of the top-3
ranked chunks, so an answer is never served for a different context set.
Redis failures are logged and behave like a cache miss.
"""
import hashlib
import json
import time
from typing import Iterable, List, Optional, Sequence, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from tutor_chat.logging_config import get_logger
from tutor_chat.models import CacheEntry, CacheStats, Citation, CompletionResult, RetrievedChunk
from tutor_chat.rag.prompts import rank_chunks

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60
FINGERPRINT_CHUNKS = 3
KEY_HEX_LENGTH = 16

STORE_ERRORS = (RedisError, OSError)


def _format_offset(offset: float) -> str:
    return str(int(offset)) if float(offset).is_integer() else str(offset)


def context_fingerprint(chunks: Sequence[RetrievedChunk]) -> str:
    """sourceId:offset pairs of the top-3 ranked chunks, sorted and joined."""
    top = rank_chunks(chunks)[:FINGERPRINT_CHUNKS]
    return "|".join(sorted(f"{c.source_id}:{_format_offset(c.start_offset_seconds)}" for c in top))


def cache_key(query: str, chunks: Sequence[RetrievedChunk]) -> str:
    """Fixed-width hex digest of the normalized query and context fingerprint."""
    normalized = query.lower().strip()
    payload = f"{normalized}::{context_fingerprint(chunks)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:KEY_HEX_LENGTH]


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class ResponseCache:
    """
    Redis-backed answer cache.

    Layout (namespace "tutorchat"):
    - tutorchat:chat:<hash>          hash with the cached answer, TTL 7 days
    - tutorchat:chat-index:<source>  set of entry keys citing a source (targeted mode only)
    - tutorchat:cache:stats          hash of request/hit/miss counters
    """

    def __init__(
        self,
        client: Redis,
        namespace: str = "tutorchat",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        targeted_invalidation: bool = False,
    ):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.targeted_invalidation = targeted_invalidation
        self.entry_prefix = f"{namespace}:chat:"
        self.index_prefix = f"{namespace}:chat-index:"
        self.stats_key = f"{namespace}:cache:stats"

    def key_for(self, query: str, chunks: Sequence[RetrievedChunk]) -> str:
        return f"{self.entry_prefix}{cache_key(query, chunks)}"

    async def lookup(self, query: str, chunks: Sequence[RetrievedChunk]) -> Optional[CacheEntry]:
        """Return the cached answer and bump its hit count, or None on a miss."""
        key = self.key_for(query, chunks)
        try:
            data = {_text(k): _text(v) for k, v in (await self.client.hgetall(key)).items()}

            # A hash without content is the remnant of an entry that expired mid-update
            if "content" not in data:
                logger.info(f"Cache miss for query: \"{query[:50]}...\"")
                await self._record_request(hit=False)
                return None

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hincrby(key, "hit_count", 1)
                pipe.expire(key, self.ttl_seconds)
                hit_count, _ = await pipe.execute()

            entry = self._entry_from_hash(key, data)
            entry.hit_count = int(hit_count)
            logger.info(f"Cache hit for query: \"{query[:50]}...\" (hits={entry.hit_count})")
            await self._record_request(hit=True, saved_usd=entry.cost_usd)
            return entry

        except STORE_ERRORS as e:
            logger.error(f"Cache lookup failed, treating as miss: {e}")
            return None

    async def store(self, query: str, chunks: Sequence[RetrievedChunk], result: CompletionResult) -> Optional[str]:
        """Cache a completed answer. Returns the key, or None if the store failed."""
        key = self.key_for(query, chunks)
        mapping = {
            "content": result.content,
            "model_id": result.model_id,
            "input_tokens": result.input_tokens,
            "output_tokens": result.output_tokens,
            "cost_usd": repr(result.cost_usd),
            "cached_at_ms": int(time.time() * 1000),
            "hit_count": 0,
            "citations": json.dumps([c.to_dict() for c in result.citations]),
        }

        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                pipe.hset(key, mapping=mapping)
                pipe.expire(key, self.ttl_seconds)
                if self.targeted_invalidation:
                    for source_id in {c.source_id for c in chunks}:
                        index_key = f"{self.index_prefix}{source_id}"
                        pipe.sadd(index_key, key)
                        pipe.expire(index_key, self.ttl_seconds)
                await pipe.execute()

            logger.info(f"Cached response for query: \"{query[:50]}...\"")
            return key

        except STORE_ERRORS as e:
            logger.error(f"Cache store failed: {e}")
            return None

    async def invalidate(self, source_id: str) -> int:
        """
        Invalidate answers that may depend on a changed source.

        Without the per-source index every cached answer is dropped.
        """
        if not self.targeted_invalidation:
            deleted = await self.invalidate_all()
            logger.info(f"Invalidated {deleted} cached responses for source {source_id}")
            return deleted

        index_key = f"{self.index_prefix}{source_id}"
        try:
            keys = [_text(k) for k in await self.client.smembers(index_key)]
            deleted = 0
            if keys:
                deleted = await self.client.delete(*keys)
            await self.client.delete(index_key)
            logger.info(f"Invalidated {deleted} cached responses for source {source_id}")
            return deleted
        except STORE_ERRORS as e:
            logger.error(f"Cache invalidation failed for source {source_id}: {e}")
            return 0

    async def invalidate_all(self) -> int:
        """Drop every cached answer and index. Statistics are kept."""
        try:
            deleted = await self._delete_matching(f"{self.entry_prefix}*")
            await self._delete_matching(f"{self.index_prefix}*")
            logger.info(f"Invalidated all {deleted} cached responses")
            return deleted
        except STORE_ERRORS as e:
            logger.error(f"Cache invalidation failed: {e}")
            return 0

    async def stats(self) -> CacheStats:
        try:
            raw = {_text(k): _text(v) for k, v in (await self.client.hgetall(self.stats_key)).items()}
        except STORE_ERRORS as e:
            logger.error(f"Cache stats read failed: {e}")
            return CacheStats()

        total = int(raw.get("total_requests", 0))
        hits = int(raw.get("hits", 0))
        return CacheStats(
            total_requests=total,
            hits=hits,
            misses=int(raw.get("misses", 0)),
            hit_rate=hits / total if total else 0.0,
            estimated_cost_saved=float(raw.get("estimated_cost_saved", 0.0)),
        )

    async def reset_stats(self) -> None:
        try:
            await self.client.delete(self.stats_key)
            logger.info("Cache statistics reset")
        except STORE_ERRORS as e:
            logger.error(f"Cache stats reset failed: {e}")

    async def info(self) -> dict:
        """Number of cached answers plus current statistics."""
        count = 0
        try:
            async for _ in self.client.scan_iter(match=f"{self.entry_prefix}*", count=100):
                count += 1
        except STORE_ERRORS as e:
            logger.error(f"Cache info failed: {e}")
        return {"cached_responses": count, "stats": await self.stats()}

    async def warm(self, entries: Iterable[Tuple[str, Sequence[RetrievedChunk], CompletionResult]]) -> int:
        """Pre-populate the cache with known question/answer pairs."""
        cached = 0
        for query, chunks, result in entries:
            if await self.store(query, chunks, result):
                cached += 1
        logger.info(f"Warmed cache with {cached} common questions")
        return cached

    async def _record_request(self, hit: bool, saved_usd: float = 0.0) -> None:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hincrby(self.stats_key, "total_requests", 1)
                pipe.hincrby(self.stats_key, "hits" if hit else "misses", 1)
                if hit and saved_usd > 0:
                    pipe.hincrbyfloat(self.stats_key, "estimated_cost_saved", saved_usd)
                await pipe.execute()
        except STORE_ERRORS as e:
            logger.error(f"Cache stats update failed: {e}")

    async def _delete_matching(self, pattern: str) -> int:
        deleted = 0
        batch: List[str] = []
        async for key in self.client.scan_iter(match=pattern, count=100):
            batch.append(_text(key))
            if len(batch) >= 100:
                deleted += await self.client.delete(*batch)
                batch = []
        if batch:
            deleted += await self.client.delete(*batch)
        return deleted

    @staticmethod
    def _entry_from_hash(key: str, data: dict) -> CacheEntry:
        return CacheEntry(
            key=key,
            content=data["content"],
            model_id=data.get("model_id", ""),
            cached_at_ms=int(data.get("cached_at_ms", 0)),
            hit_count=int(data.get("hit_count", 0)),
            input_tokens=int(data.get("input_tokens", 0)),
            output_tokens=int(data.get("output_tokens", 0)),
            cost_usd=float(data.get("cost_usd", 0.0)),
            citations=[Citation.from_dict(c) for c in json.loads(data.get("citations", "[]"))],
        )
