"""Qdrant-backed business knowledge store, one namespace per tenant."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

from qdrant_client import AsyncQdrantClient
from qdrant_client.http import models
from qdrant_client.http.models import FieldCondition, Filter, MatchValue, PointStruct

from chatforge.config import settings

logger = logging.getLogger(__name__)


@dataclass
class VectorSearchResults:
    """Matches for a query plus the joined text used as LLM context."""

    items: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def context(self) -> str:
        return "\n\n".join(item["text"] for item in self.items if item.get("text"))

    @property
    def chunk_ids(self) -> List[Dict[str, Any]]:
        return [{"id": str(item["id"]), "score": item.get("score")} for item in self.items]


class QdrantVectorService:
    """Namespace-scoped upsert, query and delete against a single collection.

    Every point carries its ``namespace`` in the payload and every read or
    delete filters on it, so one tenant can never see another's vectors.
    """

    def __init__(self, client: Optional[AsyncQdrantClient] = None) -> None:
        self.collection = settings.qdrant_collection
        self.async_client = client or AsyncQdrantClient(**self._build_client_kwargs())

    def _build_client_kwargs(self) -> Dict[str, Any]:
        """Construct client keyword arguments supporting host or full URL values."""

        host_value = (settings.qdrant_host or "").strip()
        kwargs: Dict[str, Any] = {
            "api_key": settings.qdrant_api_key,
            "timeout": 30,
            "prefer_grpc": False,
            "check_compatibility": False,
        }

        if host_value.startswith("http://") or host_value.startswith("https://"):
            kwargs["url"] = host_value.rstrip("/")
        else:
            kwargs["host"] = host_value or "localhost"
            kwargs["port"] = settings.qdrant_port
            kwargs["https"] = False

        return kwargs

    @staticmethod
    def _namespace_filter(namespace: str) -> Filter:
        return Filter(must=[FieldCondition(key="namespace", match=MatchValue(value=namespace))])

    async def upsert(self, namespace: str, chunks: List[Dict[str, Any]]) -> bool:
        if not chunks:
            return True

        points: List[PointStruct] = []
        for chunk in chunks:
            payload = dict(chunk.get("metadata", {}))
            payload.update({"namespace": namespace, "text": chunk.get("text", "")})
            points.append(PointStruct(id=chunk.get("id") or str(uuid4()), vector=chunk["embedding"], payload=payload))

        try:
            await self.async_client.upsert(collection_name=self.collection, points=points)
            logger.info("Stored business chunks", extra={"count": len(points), "namespace": namespace})
            return True
        except Exception as exc:
            logger.error("Failed to upsert vectors", extra={"namespace": namespace, "error": str(exc)})
            return False

    async def query(
        self,
        namespace: str,
        embedding: List[float],
        *,
        top_k: Optional[int] = None,
        score_threshold: Optional[float] = None,
    ) -> VectorSearchResults:
        try:
            response = await self.async_client.query_points(
                collection_name=self.collection,
                query=embedding,
                query_filter=self._namespace_filter(namespace),
                limit=max(1, top_k or settings.vector_top_k),
                score_threshold=score_threshold,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as exc:
            logger.error("Vector search failed", extra={"namespace": namespace, "error": str(exc)})
            return VectorSearchResults()

        items = []
        for point in response.points:
            payload = point.payload or {}
            items.append(
                {
                    "id": point.id,
                    "score": point.score,
                    "text": payload.get("text", ""),
                    "metadata": {k: v for k, v in payload.items() if k not in {"text", "namespace"}},
                }
            )
        return VectorSearchResults(items=items)

    async def delete_namespace(self, namespace: str) -> bool:
        try:
            await self.async_client.delete(
                collection_name=self.collection,
                points_selector=models.FilterSelector(filter=self._namespace_filter(namespace)),
            )
            logger.warning("Removed all namespace vectors", extra={"namespace": namespace})
            return True
        except Exception as exc:
            logger.error("Failed to delete namespace vectors", extra={"namespace": namespace, "error": str(exc)})
            return False

    async def health_check(self) -> bool:
        try:
            await self.async_client.get_collections()
            return True
        except Exception as exc:
            logger.error("Qdrant health check failed", extra={"error": str(exc)})
            return False
