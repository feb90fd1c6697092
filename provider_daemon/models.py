"""Pydantic request models for the REST API."""

from typing import Any, Dict

from pydantic import BaseModel, Field


class PipeCall(BaseModel):
    method: str = Field(min_length=1, max_length=16)
    path: str = Field(min_length=1, max_length=256)
    params: Dict[str, Any] = {}
    body: Any = None
