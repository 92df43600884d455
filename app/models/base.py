"""
Pydantic base models shared by request/response validation.

DESIGN PRINCIPLE:
- Models reflect data structure; lifecycle rules live in services
- Timestamps are always timezone-aware UTC
"""

from pydantic import BaseModel, Field
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class BaseResponse(BaseModel):
    """
    Base response envelope for API responses.
    All API responses use this for consistency.
    """
    success: bool = True
    message: Optional[str] = None
    data: Optional[Any] = None
    timestamp: datetime = Field(default_factory=utc_now)
