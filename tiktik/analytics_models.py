from datetime import datetime, timezone
from typing import Optional, Annotated
from pydantic import BaseModel, Field, BeforeValidator
from bson import ObjectId


def validate_object_id(v):
    if isinstance(v, ObjectId):
        return v
    if isinstance(v, str) and ObjectId.is_valid(v):
        return ObjectId(v)
    raise ValueError("Invalid ObjectId")


def utc_now():
    """Factory function for UTC datetime"""
    return datetime.now(timezone.utc)


PyObjectId = Annotated[ObjectId, BeforeValidator(validate_object_id)]


class WatchSession(BaseModel):
    """One viewer's visit to a live stream, written when the view closes"""

    id: PyObjectId = Field(default_factory=ObjectId, alias="_id")
    stream_id: str
    viewer_id: str
    watch_seconds: int = 0
    messages_count: int = 0
    peak_viewers: int = 0
    joined_at: datetime
    left_at: datetime
    created_at: datetime = Field(default_factory=utc_now)

    class Config:
        populate_by_name = True
        arbitrary_types_allowed = True
        json_encoders = {ObjectId: str}
