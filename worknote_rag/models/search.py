"""
Pydantic models for similarity search.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class SimilarNotesRequest(BaseModel):
    """Request body for finding work notes similar to a piece of text."""
    query: str = Field(..., max_length=20000, description="Text to compare against")
    top_k: Optional[int] = Field(None, ge=1, le=50, description="Maximum number of notes to return")
    score_threshold: Optional[float] = Field(None, ge=0.0, le=1.0, description="Minimum similarity score")


class TodoSummary(BaseModel):
    """Open todo attached to a similar note."""
    todo_id: str
    title: str
    status: str
    due_date: Optional[datetime] = None


class SimilarWorkNote(BaseModel):
    """A work note ranked by similarity to the query."""
    work_id: str
    title: str
    content: str
    category: Optional[str] = None
    similarity_score: float
    todos: List[TodoSummary] = Field(default_factory=list)


class SimilarNotesResponse(BaseModel):
    """Similarity search results, best match first."""
    results: List[SimilarWorkNote]
