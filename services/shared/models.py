from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class Capability(str, Enum):
    list = "list"
    checkout = "checkout"
    buy = "buy"
    return_ = "return"
    sell = "sell"


class GrantVerb(str, Enum):
    put = "PUT"
    abort_multipart = "ABORT_MULTIPART"


class Message(BaseModel):
    message_id: str
    capability: Capability
    payload: Any = None
    published_at: datetime
    source: str
    receive_count: int = 0


class DeadLetter(BaseModel):
    message: Message
    subscription: str
    reason: str
    attempts: int
    dead_lettered_at: datetime


# --- event bus API ---


class PublishRequest(BaseModel):
    capability: str
    payload: Any = None


class PublishResponse(BaseModel):
    message_id: str
    capability: Capability
    topic: str


class ReceiveRequest(BaseModel):
    max_wait_seconds: float = Field(default=0.0, ge=0, le=20)
    max_messages: int = Field(default=10, ge=1, le=10)


class ReceiveResponse(BaseModel):
    queue: str
    messages: List[Message]


class AckRequest(BaseModel):
    message_id: str


class QueueStats(BaseModel):
    queue: str
    visible: int
    in_flight: int
    dead_lettered: int


class TopicInfo(BaseModel):
    name: str
    identity: str
    capability: Capability
    subscriptions: List[str]


class RedriveResponse(BaseModel):
    subscription: str
    redriven: int


# --- media API ---


class AuthorizeRequest(BaseModel):
    key: str
    verbs: List[GrantVerb] = Field(default_factory=lambda: [GrantVerb.put])
    ttl_seconds: Optional[int] = None


class UploadGrantResponse(BaseModel):
    url: str
    expires_at: datetime
    grant_id: str
    key: str
    verbs: List[GrantVerb]


class UploadResult(BaseModel):
    key: str
    version_id: str
    etag: str
    content_type: str
    size: int


class MultipartStarted(BaseModel):
    key: str
    upload_id: str


class ObjectVersionInfo(BaseModel):
    key: str
    version_id: str
    etag: str
    content_type: str
    size: int
    created_at: datetime
    principal: str
    is_current: bool = False


class VersionListResponse(BaseModel):
    key: str
    versions: List[ObjectVersionInfo]
