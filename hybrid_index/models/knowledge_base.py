from __future__ import annotations
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChunkIn(BaseModel):
    """A text chunk produced by a document extractor, not yet embedded."""
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IndexFileRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: Optional[str] = Field(default=None, alias="fileName")
    chunks: List[ChunkIn] = Field(default_factory=list)


class FileSource(BaseModel):
    """One file of a knowledge base, as handed to a full re-index."""
    model_config = ConfigDict(populate_by_name=True)

    file_id: str = Field(alias="fileId")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    chunks: List[ChunkIn] = Field(default_factory=list)


class SearchRequest(BaseModel):
    query_text: Optional[str] = None
    query_embedding: Optional[List[float]] = None
    k: int = Field(default=5, ge=1, le=100)

    @model_validator(mode="after")
    def check_query(self) -> "SearchRequest":
        if not self.query_text and not self.query_embedding:
            raise ValueError("Provide query_text or query_embedding")
        return self
