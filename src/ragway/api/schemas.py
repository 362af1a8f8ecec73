"""Pydantic models for the ragway API."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ragway.models import Scalar


class ChatRequest(BaseModel):
    # Optional so a missing message is reported as 400 by the route, not 422.
    message: Optional[str] = Field(default=None, description="End-user message to answer")
    use_context: bool = Field(default=True, description="Retrieve context from the vector index")
    max_docs: Optional[int] = Field(default=None, ge=1, le=20, description="Documents to retrieve")
    min_score: Optional[float] = Field(default=None, description="Score threshold when include_scores is set")
    include_scores: Optional[bool] = Field(default=None, description="Filter and annotate documents by score")


class ChatResponse(BaseModel):
    response: str


class ErrorResponse(BaseModel):
    error: str
    correlation_id: Optional[str] = None


class DocumentModel(BaseModel):
    content: str = Field(..., min_length=1)
    metadata: Dict[str, Scalar] = Field(default_factory=dict)


class AddDocumentsRequest(BaseModel):
    documents: List[DocumentModel] = Field(..., min_length=1)


class AddDocumentsResponse(BaseModel):
    success: bool
    message: str
    documents_added: int
    ids: List[str] = Field(default_factory=list)


class SearchResult(BaseModel):
    rank: int
    score: float
    source: Optional[str] = None
    content: str


class SearchResponse(BaseModel):
    success: bool
    query: str
    results: List[SearchResult]


class CacheFlushResponse(BaseModel):
    pattern: str
    deleted: int
