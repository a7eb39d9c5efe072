"""
Pydantic models for work notes and their todos.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class WorkNoteBase(BaseModel):
    """Base work note model with common fields."""
    title: str = Field(..., min_length=1, max_length=500, description="Work note title")
    content: str = Field("", max_length=200000, description="Free-text note body")
    category: Optional[str] = Field(None, max_length=100, description="Optional category label")
    project_id: Optional[str] = Field(None, max_length=64, description="Optional owning project")


class WorkNoteCreate(WorkNoteBase):
    """Model for creating a new work note."""
    pass


class WorkNoteUpdate(BaseModel):
    """Model for updating an existing work note. Omitted fields are left unchanged."""
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    content: Optional[str] = Field(None, max_length=200000)
    category: Optional[str] = Field(None, max_length=100)
    project_id: Optional[str] = Field(None, max_length=64)


class WorkNoteInDB(BaseModel):
    """Work note as stored, including embedding bookkeeping."""
    work_id: str
    title: str
    content_raw: str
    category: Optional[str] = None
    project_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    embedded_at: Optional[datetime] = None
    max_chunk_count: int = 0

    class Config:
        from_attributes = True


class WorkNote(BaseModel):
    """Work note model for API responses."""
    work_id: str
    title: str
    content: str
    category: Optional[str] = None
    project_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    embedded_at: Optional[datetime] = None
    embedding_pending: bool = Field(True, description="True until the vector index reflects the current content")


class TodoInDB(BaseModel):
    """Todo as stored."""
    todo_id: str
    work_id: str
    title: str
    status: str
    due_date: Optional[datetime] = None

    class Config:
        from_attributes = True
