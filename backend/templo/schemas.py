from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

ContentFormat = Literal["html", "markdown"]


class ErrorResponse(BaseModel):
    error: str
    detail: Any | None = None


class OkResponse(BaseModel):
    ok: bool = True


class UserInfo(BaseModel):
    user_id: str
    username: str
    email: str | None = None
    role: Literal["admin", "member"]
    magical_name: str | None = None
    disabled_at: str | None = None
    created_at: str
    updated_at: str


class AuthMeResponse(BaseModel):
    authenticated: bool
    role: Literal["admin", "member", "anonymous"]
    user_id: str | None = None
    username: str | None = None
    email: str | None = None
    magical_name: str | None = None


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=64)
    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=6)
    magical_name: str | None = None


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class LoginResponse(BaseModel):
    token: str
    user: AuthMeResponse


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6)


class GrimoireSummary(BaseModel):
    grimoire_id: int
    title: str
    excerpt: str | None = None
    author: str | None = None
    content_format: ContentFormat = "html"
    is_paid: bool = False
    is_published: bool = True
    enable_pdf_download: bool = False
    display_order: int = 0
    word_count: int = 0
    created_at: str
    updated_at: str


class Grimoire(GrimoireSummary):
    content: str


class GrimoiresResponse(BaseModel):
    grimoires: list[GrimoireSummary]


class GrimoireCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    content: str = ""
    content_format: ContentFormat = "html"
    excerpt: str | None = None
    author: str | None = None
    is_paid: bool = False
    is_published: bool = True
    enable_pdf_download: bool = False
    display_order: int = 0


class GrimoireUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    content: str | None = None
    content_format: ContentFormat | None = None
    excerpt: str | None = None
    author: str | None = None
    is_paid: bool | None = None
    is_published: bool | None = None
    enable_pdf_download: bool | None = None
    display_order: int | None = None


class GrimoireOrderRequest(BaseModel):
    display_order: int


class AccessGrantRequest(BaseModel):
    user_id: str = Field(min_length=1)


class ProgressUpdateRequest(BaseModel):
    current_page: int = Field(ge=1)
    total_pages: int = Field(ge=1)


class ProgressResponse(BaseModel):
    grimoire_id: int
    current_page: int = 1
    total_pages: int = 1
    progress_percentage: float = 0.0
    is_completed: bool = False
    completed_at: str | None = None
    last_read_at: str | None = None


class AdminSettingsUpdateRequest(BaseModel):
    settings: dict[str, Any]


class AdminSettingsResponse(BaseModel):
    defaults: dict[str, Any]
    settings: dict[str, Any]
    effective: dict[str, Any]
