"""Pydantic models for file offers."""

from enum import Enum

from pydantic import BaseModel


class OfferState(str, Enum):
    """Lifecycle of a single offer."""
    PENDING = "pending"
    SERVING = "serving"
    CONSUMED = "consumed"


class Offer(BaseModel):
    """Registered state for one file awaiting a single download."""
    port: int
    file_path: str
    file_name: str
    uploader_host: str
    access_token: str
    state: OfferState = OfferState.PENDING
    created_at: float


class UploadedFile(BaseModel):
    """The file part recovered from a multipart body."""
    filename: str
    content_type: str | None = None
    payload: bytes


class OfferTicket(BaseModel):
    """Returned to the uploader: where and with what to fetch the file."""
    port: int
    token: str


class RelayedFile(BaseModel):
    """A file pulled from a transfer listener into local staging."""
    port: int
    file_name: str
    content_type: str
    path: str
    size: int
