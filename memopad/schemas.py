"""
Pydantic schemas for the memo service.
"""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class AuthErrorResponse(BaseModel):
    error: str


class HomeResponse(BaseModel):
    user_id: str
    email: str
    message: str


class SignUpFormResponse(BaseModel):
    fields: list[str]
    required: list[str]


class SignUpRequest(BaseModel):
    # Presence only; format and strength are left to the platform.
    email: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class SignUpResponse(BaseModel):
    user_id: str
    email: str
    username: str


class SignUpErrorResponse(BaseModel):
    error: str
    account_created: bool


class MemoCreateRequest(BaseModel):
    content: str = Field(..., max_length=10000)


class MemoResponse(BaseModel):
    id: Union[int, str]
    content: str
    created_at: Optional[str] = None


class LiveAction(BaseModel):
    action: Literal["add", "delete"]
    content: Optional[str] = None
    id: Optional[Union[int, str]] = None


class LiveMessage(BaseModel):
    type: Literal["SNAPSHOT", "INSERT", "DELETE", "ERROR"]
    memos: list[MemoResponse] = Field(default_factory=list)
    detail: Optional[str] = None
