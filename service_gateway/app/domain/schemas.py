"""
Request and response models for the gateway HTTP API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ToolCallBody(BaseModel):
    """Body of ``POST /mcp/tools/call``."""

    tool: str = Field(..., min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)
    version: Optional[str] = None

    @field_validator("version", mode="before")
    @classmethod
    def _numeric_version(cls, value: Any) -> Any:
        # {"version": 2} means "2"
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class ToolSummary(BaseModel):
    name: str
    version: str
    description: str = ""
    parameters: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    timeout_seconds: float
    cache: Dict[str, Any] = Field(default_factory=dict)
    deprecated_since: Optional[str] = None


class ToolListResponse(BaseModel):
    tools: List[ToolSummary]
    count: int


class IssueTokenRequest(BaseModel):
    scopes: List[str] = Field(..., min_length=1)
    ttl_seconds: Optional[int] = Field(default=None, gt=0)
    label: Optional[str] = None


class IssueTokenResponse(BaseModel):
    token: str
    scopes: List[str]
    expires_at: float
    label: Optional[str] = None


class RevokeTokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ReloadResponse(BaseModel):
    tools: int
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    changed: List[str] = Field(default_factory=list)
    invalidated_entries: int = 0
