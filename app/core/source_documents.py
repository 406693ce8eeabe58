from __future__ import annotations

from typing import Protocol

from app.schemas.canonical import AnalysisRecord


class SourceDocumentProvider(Protocol):
    def get_source_text(self, record: AnalysisRecord) -> str | None:
        """Return the literal document text a record was analysed from."""


class StoredSourceDocuments:
    """Reads the source text captured alongside the record at analysis time."""

    def get_source_text(self, record: AnalysisRecord) -> str | None:
        text = record.source_text
        if text is None or not text.strip():
            return None
        return text


def get_default_source_documents() -> SourceDocumentProvider:
    return StoredSourceDocuments()
