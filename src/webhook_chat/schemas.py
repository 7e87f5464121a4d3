"""Pydantic request/response models shared by the server and the client."""
from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    message: str = Field(..., description="User-authored chat text.")
    timestamp: Optional[str] = Field(default=None, description="ISO-8601 creation time, passed through verbatim.")


class ChatResponse(BaseModel):
    response: str


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    environment: str
    services: Dict[str, str]
