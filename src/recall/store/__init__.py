"""Document store: persistence, hybrid search and curation of embedded messages."""

from recall.store.document_store import DocumentStore, document_id

__all__ = ["DocumentStore", "document_id"]
