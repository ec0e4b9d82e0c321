"""ChromaDB index of document text chunks for grounding extraction."""

import logging
from dataclasses import dataclass
from typing import Any

import chromadb
from chromadb.config import Settings as ChromaSettings
from litellm import aembedding

from payroll_recon.config import settings
from payroll_recon.parsers.pdf_text import TextChunk
from payroll_recon.services.key_pool import KeyPool

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingSummary:
    """How much of a document made it into the index."""

    total_chunks: int
    embedded_chunks: int
    total_chars: int
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.total_chunks > 0 and self.embedded_chunks == self.total_chunks

    def describe(self) -> str:
        if self.success:
            return f"Generated {self.embedded_chunks} chunks"
        return f"Embedded {self.embedded_chunks}/{self.total_chunks} chunks"


class ChunkIndex:
    """In-memory vector index of statement chunks, one entry per chunk."""

    def __init__(self, key_pool: KeyPool | None = None, client: Any = None):
        # Chunks only matter for the current session, so the client is ephemeral
        self._client = client or chromadb.EphemeralClient(settings=ChromaSettings(anonymized_telemetry=False))
        self._collection = self._client.get_or_create_collection(
            name="document_chunks",
            metadata={"description": "Statement text chunks"},
        )
        self._key_pool = key_pool

    async def index_document(self, document_id: str, chunks: list[TextChunk]) -> EmbeddingSummary:
        """
        Embed and store every chunk of a document.

        Best-effort: a chunk whose embedding fails is skipped and counted,
        never raised.
        """
        total_chars = sum(len(chunk.text) for chunk in chunks)
        if not chunks:
            return EmbeddingSummary(total_chunks=0, embedded_chunks=0, total_chars=0, error="No text to embed")

        ids, embeddings, documents, metadatas = [], [], [], []
        last_error = None
        for chunk in chunks:
            embedding = await self._get_embedding(chunk.text)
            if embedding is None:
                last_error = f"Embedding failed for chunk {chunk.index}"
                continue
            ids.append(f"{document_id}:{chunk.index}")
            embeddings.append(embedding)
            documents.append(chunk.text)
            metadatas.append(
                {
                    "document_id": document_id,
                    "chunk_index": chunk.index,
                    "pages": ",".join(str(page) for page in chunk.pages),
                }
            )

        # Re-indexing replaces whatever an earlier run stored for this document
        self.remove_document(document_id)
        if ids:
            self._collection.upsert(ids=ids, embeddings=embeddings, documents=documents, metadatas=metadatas)

        summary = EmbeddingSummary(
            total_chunks=len(chunks), embedded_chunks=len(ids), total_chars=total_chars, error=last_error
        )
        logger.info("Indexed %s: %s", document_id, summary.describe())
        return summary

    async def search(self, query: str, document_id: str | None = None, n_results: int = 5) -> list[dict]:
        """Chunks semantically closest to the query, optionally within one document."""
        query_embedding = await self._get_embedding(query)
        if not query_embedding:
            return []

        results = self._collection.query(
            query_embeddings=[query_embedding],
            n_results=n_results,
            where={"document_id": document_id} if document_id else None,
            include=["documents", "metadatas", "distances"],
        )

        formatted = []
        if results["ids"] and results["ids"][0]:
            for i, chunk_id in enumerate(results["ids"][0]):
                formatted.append(
                    {
                        "id": chunk_id,
                        "document": results["documents"][0][i] if results["documents"] else None,
                        "metadata": results["metadatas"][0][i] if results["metadatas"] else None,
                        "distance": results["distances"][0][i] if results["distances"] else None,
                    }
                )
        return formatted

    def remove_document(self, document_id: str) -> None:
        self._collection.delete(where={"document_id": document_id})

    def get_collection_count(self) -> int:
        return self._collection.count()

    async def _get_embedding(self, text: str) -> list[float] | None:
        """Embedding for one text, or None if the call failed."""
        key = self._key_pool.next() if self._key_pool else None
        try:
            response = await aembedding(
                model=settings.embedding_model_name,
                input=[text],
                api_key=key or None,
                api_base=settings.api_base,
            )
        except Exception as e:
            logger.warning("Embedding error: %s", e)
            if self._key_pool and key is not None:
                self._key_pool.report_failure(key)
            return None

        if self._key_pool and key is not None:
            self._key_pool.report_success(key)
        return response.data[0]["embedding"]
