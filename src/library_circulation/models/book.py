"""
Book model for the Library Circulation server.

This is the read-side view of a catalog entry handed back to callers. Copy
counts are the part circulation cares about; everything else is descriptive
catalog data that circulation never changes.
"""

import json
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Book(BaseModel):
    """
    Represents a book in the library catalog.

    ``available_copies`` is a snapshot taken when the model was built; the
    database row remains the single source of truth for availability.
    """

    id: str = Field(
        ...,
        description="Opaque unique identifier of the book",
        pattern=r"^book_[a-zA-Z0-9]{6,}$",
        examples=["book_3f9a1c2e7b44"],
    )

    title: str = Field(..., description="The title of the book", min_length=1, max_length=500)

    author: str = Field(..., description="Author display name", min_length=1, max_length=200)

    isbn: str | None = Field(None, description="ISBN-13 without hyphens", pattern=r"^\d{13}$")

    genre: str | None = Field(None, description="Literary genre or category")

    published_year: int | None = Field(None, description="Year the book was published")

    description: str | None = Field(None, description="Brief summary", max_length=2000)

    location: str | None = Field(None, description="Shelf location", max_length=100)

    tags: list[str] = Field(default_factory=list, description="Free-form catalog tags")

    total_copies: int = Field(..., description="Copies owned by the library", ge=1)

    available_copies: int = Field(..., description="Copies on the shelf right now", ge=0)

    is_active: bool = Field(default=True, description="False once the book is withdrawn")

    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("tags", mode="before")
    @classmethod
    def decode_tags(cls, v):
        """Accept the JSON-encoded column value as well as a list."""
        if v is None:
            return []
        if isinstance(v, str):
            return json.loads(v) if v else []
        return v

    @model_validator(mode="after")
    def validate_copies(self) -> "Book":
        """Ensure available copies doesn't exceed total copies."""
        if self.available_copies > self.total_copies:
            raise ValueError("Available copies cannot exceed total copies")
        return self

    @property
    def is_available(self) -> bool:
        """Check if the book has any available copies."""
        return self.available_copies > 0

    @property
    def borrowed_copies(self) -> int:
        """Number of copies currently out on loan."""
        return self.total_copies - self.available_copies

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": "book_3f9a1c2e7b44",
                "title": "The Great Gatsby",
                "author": "F. Scott Fitzgerald",
                "isbn": "9780743273565",
                "genre": "Fiction",
                "published_year": 1925,
                "total_copies": 3,
                "available_copies": 2,
                "is_active": True,
            }
        },
    )
