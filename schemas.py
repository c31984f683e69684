"""
Database Schemas for StudySync

Each Pydantic model describes the documents of one MongoDB collection as the
application reads them back. Collection names follow the feeds that use them
(doubts, answers, notes, users). Unknown or missing fields fail the decode.
"""

from enum import Enum
from typing import Any, List, Mapping, Optional, Type, TypeVar
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from exceptions import RecordDecodeError

DOUBTS = "doubts"
ANSWERS = "answers"
NOTES = "notes"
USERS = "users"
ACCOUNTS = "accounts"
REVOKED_TOKENS = "revoked_tokens"


class Subject(str, Enum):
    DSA = "DSA"
    DBMS = "DBMS"
    OS = "OS"
    CN = "CN"
    MATHS = "Maths"
    PHYSICS = "Physics"
    CHEMISTRY = "Chemistry"
    OTHER = "Other"


class ResourceType(str, Enum):
    YOUTUBE = "youtube"
    DRIVE = "drive"


class StoredRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Doubt(StoredRecord):
    """A question posted by a student. Collection name: "doubts" """
    id: str
    author_id: str
    author_name: str
    subject: Subject
    description: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    is_resolved: bool = Field(False, description="Flips false -> true once, never back")


class Answer(StoredRecord):
    """A reply to a doubt. Collection name: "answers" """
    id: str
    doubt_id: str
    author_id: str
    author_name: str
    text: str
    created_at: datetime
    updated_at: Optional[datetime] = None


class Resource(StoredRecord):
    """A shared YouTube video or Drive file. Collection name: "notes" """
    id: str
    author_id: str
    author_name: str
    topic: str
    subject: Subject
    description: Optional[str] = None
    resource_url: str
    resource_type: ResourceType
    created_at: datetime
    updated_at: Optional[datetime] = None


class UserProfile(StoredRecord):
    """Profile written once at sign-up. Collection name: "users", keyed by uid"""
    uid: str
    name: str
    email: str
    upvote_score: int = Field(0, ge=0, description="Never incremented")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


R = TypeVar("R", bound=StoredRecord)


def decode_record(model: Type[R], raw: Mapping[str, Any], collection: Optional[str] = None) -> R:
    """Turn a raw store document into a typed record, or raise RecordDecodeError."""
    data = dict(raw)
    if "_id" in data:
        data["id"] = str(data.pop("_id"))
    if model is UserProfile:
        # users/{uid}: the document key is the uid itself
        data.setdefault("uid", data.get("id"))
        data.pop("id", None)
    try:
        return model.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise RecordDecodeError(collection or model.__name__.lower(), data.get("id") or data.get("uid"), errors)


def decode_records(model: Type[R], raws: List[Mapping[str, Any]], collection: Optional[str] = None) -> List[R]:
    return [decode_record(model, raw, collection) for raw in raws]
