from __future__ import annotations
from typing import Any, NewType, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

DocumentId = NewType("DocumentId", str)
FileId = NewType("FileId", str)


def new_document_id() -> str:
    return f"doc_{uuid4().hex}"


def as_file_id(value: Any) -> Optional[FileId]:
    """Normalize a file id (ints from upstream systems, strings from snapshots)."""
    if value is None or value == "":
        return None
    return FileId(str(value))


class DocumentMetadata(BaseModel):
    """
    Provenance of a chunk.
    Fields use camelCase on the wire (snapshot, API) and snake_case in Python.
    Extra keys produced by extractors (page numbers, headings...) are kept as-is.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    file_id: Optional[str] = Field(default=None, alias="fileId")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    source: Optional[str] = None
    chunk_index: Optional[int] = Field(default=None, alias="chunkIndex")
    total_chunks: Optional[int] = Field(default=None, alias="totalChunks")

    @field_validator("file_id", mode="before")
    @classmethod
    def validate_file_id(cls, v: Any) -> Optional[str]:
        """Ensure file ids are strings so 42 and "42" name the same file."""
        return as_file_id(v)


class Document(BaseModel):
    """
    A retrievable text chunk.
    Immutable once stored: updates happen by delete + re-add.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_document_id)
    content: str = ""
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, v: Any) -> str:
        if v is None or v == "":
            return new_document_id()
        return str(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def validate_metadata(cls, v: Any) -> DocumentMetadata:
        """Ensure metadata is a DocumentMetadata instance."""
        if isinstance(v, DocumentMetadata):
            return v
        if isinstance(v, dict):
            return DocumentMetadata(**v)
        return DocumentMetadata()

    @property
    def file_id(self) -> Optional[FileId]:
        return as_file_id(self.metadata.file_id)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SearchHit(BaseModel):
    """One ranked search result."""
    document: Document
    similarity: float
