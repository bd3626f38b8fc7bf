from __future__ import annotations

import sqlite3
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from . import app_db
from .auth import (
    AUTH_COOKIE,
    AuthContext,
    Principal,
    apply_auth_cookies,
    create_login_session,
    ensure_bootstrap_admin,
    hash_password,
    logout_session,
    open_session,
    require_login,
    require_role,
    resolve_auth,
    set_session_cookie,
    verify_password,
)
from .config import CORS_ORIGINS
from .html_normalize import count_words
from .logging_utils import get_logger
from .pdf_export import (
    DEFAULT_AUTHOR,
    BuildInvariantViolation,
    DocumentRequest,
    content_to_text,
    pdf_filename,
    render_pdf,
)
from .schemas import (
    AccessGrantRequest,
    AdminSettingsResponse,
    AdminSettingsUpdateRequest,
    AuthMeResponse,
    Grimoire,
    GrimoireCreateRequest,
    GrimoireOrderRequest,
    GrimoiresResponse,
    GrimoireSummary,
    GrimoireUpdateRequest,
    LoginRequest,
    LoginResponse,
    OkResponse,
    PasswordChangeRequest,
    ProgressResponse,
    ProgressUpdateRequest,
    RegisterRequest,
)
from .settings import (
    SettingsError,
    ensure_defaults,
    get_settings_bundle,
    pdf_layout_from_settings,
    pdf_settings,
    update_settings,
)

log = get_logger(__name__)

PLACEHOLDER_CONTENT = "<p>Conteúdo não disponível</p>"
_NULLABLE_FIELDS = ("excerpt", "author")

app = FastAPI(title="templo-do-abismo-backend")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def _startup() -> None:
    app_db.init_db()
    ensure_defaults()
    ensure_bootstrap_admin()


def _me(p: Principal) -> AuthMeResponse:
    return AuthMeResponse(
        authenticated=bool(p.authenticated),
        role=p.role,
        user_id=p.user_id,
        username=p.username,
        email=p.email,
        magical_name=p.magical_name,
    )


@app.get("/health")
def health() -> dict[str, Any]:
    try:
        app_db.count_users()
        db_ready = True
    except sqlite3.Error:
        log.exception("Database health check failed")
        db_ready = False
    return {"status": "ok", "db_ready": db_ready}


@app.post("/api/auth/register", response_model=LoginResponse, status_code=201)
def auth_register(req: RegisterRequest, response: Response) -> LoginResponse:
    username = req.username.strip()
    email = req.email.strip().lower()
    if app_db.get_user_by_username(username):
        raise HTTPException(status_code=400, detail="Username already in use")
    if app_db.get_user_by_email(email):
        raise HTTPException(status_code=400, detail="Email already in use")

    magical_name = str(req.magical_name).strip() if req.magical_name else None
    try:
        rec = app_db.create_user(
            username=username,
            email=email,
            password_hash=hash_password(req.password),
            role="member",
            magical_name=magical_name or None,
        )
    except sqlite3.IntegrityError as e:
        raise HTTPException(status_code=400, detail="Username or email already in use") from e

    log.info("Registered member username=%s", username)
    principal, token = open_session(rec)
    set_session_cookie(response, token)
    return LoginResponse(token=token, user=_me(principal))


@app.post("/api/auth/login", response_model=LoginResponse)
def auth_login(req: LoginRequest, response: Response) -> LoginResponse:
    principal, token = create_login_session(username=req.username, password=req.password)
    set_session_cookie(response, token)
    return LoginResponse(token=token, user=_me(principal))


@app.post("/api/auth/logout", response_model=AuthMeResponse)
def auth_logout(request: Request, response: Response, ctx: AuthContext = Depends(resolve_auth)) -> AuthMeResponse:
    if ctx.principal.authenticated:
        logout_session(request)
    response.delete_cookie(AUTH_COOKIE)
    return AuthMeResponse(authenticated=False, role="anonymous")


@app.get("/api/auth/me", response_model=AuthMeResponse)
def auth_me(response: Response, ctx: AuthContext = Depends(resolve_auth)) -> AuthMeResponse:
    apply_auth_cookies(response, ctx)
    return _me(require_login(ctx))


@app.post("/api/auth/change-password", response_model=OkResponse)
def auth_change_password(req: PasswordChangeRequest, ctx: AuthContext = Depends(resolve_auth)) -> OkResponse:
    principal = require_login(ctx)
    user = app_db.get_user(str(principal.user_id))
    if not user:
        raise HTTPException(status_code=401, detail="Invalid session")
    if not verify_password(req.current_password, str(user.get("password_hash") or "")):
        raise HTTPException(status_code=401, detail="Invalid current password")
    app_db.update_user(user_id=str(user["user_id"]), password_hash=hash_password(req.new_password))
    return OkResponse()


def _load_readable_grimoire(grimoire_id: int, principal: Principal) -> dict[str, Any]:
    rec = app_db.get_grimoire(grimoire_id)
    if not rec or (not principal.is_admin and not rec["is_published"]):
        raise HTTPException(status_code=404, detail="Grimoire not found")
    if principal.is_admin or not rec["is_paid"]:
        return rec
    if not app_db.has_access(user_id=str(principal.user_id), grimoire_id=grimoire_id):
        raise HTTPException(status_code=403, detail="Access to this grimoire is restricted")
    return rec


def _load_grimoire_or_404(grimoire_id: int) -> dict[str, Any]:
    rec = app_db.get_grimoire(grimoire_id)
    if not rec:
        raise HTTPException(status_code=404, detail="Grimoire not found")
    return rec


def _pdf_response(rec: dict[str, Any]) -> Response:
    try:
        effective = get_settings_bundle()["effective"]
        layout = pdf_layout_from_settings(effective)
        pdf_cfg = pdf_settings(effective)
    except SettingsError as e:
        log.exception("Settings error")
        raise HTTPException(status_code=500, detail=str(e)) from e

    content = str(rec.get("content") or "")
    content_format = str(rec.get("content_format") or "html")
    if not content.strip():
        content = str(pdf_cfg.get("placeholder_content") or PLACEHOLDER_CONTENT)
        content_format = "html"
    author = str(rec.get("author") or pdf_cfg.get("author") or DEFAULT_AUTHOR)

    request = DocumentRequest(title=str(rec["title"]), content=content, author=author, content_format=content_format)  # type: ignore[arg-type]
    try:
        data = render_pdf(request, layout)
    except BuildInvariantViolation as e:
        log.exception("PDF generation failed for grimoire_id=%s", rec["grimoire_id"])
        raise HTTPException(status_code=500, detail="Failed to generate PDF") from e

    log.info("PDF export grimoire_id=%s size=%d", rec["grimoire_id"], len(data))
    return Response(
        content=data,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{pdf_filename(str(rec["title"]))}"',
            "Cache-Control": "no-cache",
        },
    )


@app.get("/api/grimoires", response_model=GrimoiresResponse)
def list_published_grimoires() -> GrimoiresResponse:
    rows = app_db.list_grimoires(published_only=True)
    return GrimoiresResponse(grimoires=[GrimoireSummary(**r) for r in rows])


@app.get("/api/grimoires/{grimoire_id}", response_model=Grimoire)
def get_grimoire(grimoire_id: int, ctx: AuthContext = Depends(resolve_auth)) -> Grimoire:
    principal = require_login(ctx)
    return Grimoire(**_load_readable_grimoire(grimoire_id, principal))


@app.get("/api/grimoires/{grimoire_id}/pdf")
def download_grimoire_pdf(grimoire_id: int, ctx: AuthContext = Depends(resolve_auth)) -> Response:
    principal = require_login(ctx)
    rec = _load_readable_grimoire(grimoire_id, principal)
    if not principal.is_admin and not rec["enable_pdf_download"]:
        raise HTTPException(status_code=403, detail="PDF download is not enabled for this grimoire")
    return _pdf_response(rec)


@app.get("/api/user/grimoire-progress/{grimoire_id}", response_model=ProgressResponse)
def get_grimoire_progress(grimoire_id: int, ctx: AuthContext = Depends(resolve_auth)) -> ProgressResponse:
    principal = require_login(ctx)
    _load_readable_grimoire(grimoire_id, principal)
    rec = app_db.get_progress(user_id=str(principal.user_id), grimoire_id=grimoire_id)
    return ProgressResponse(**rec) if rec else ProgressResponse(grimoire_id=grimoire_id)


@app.post("/api/user/grimoire-progress/{grimoire_id}", response_model=ProgressResponse)
def save_grimoire_progress(
    grimoire_id: int, req: ProgressUpdateRequest, ctx: AuthContext = Depends(resolve_auth)
) -> ProgressResponse:
    principal = require_login(ctx)
    _load_readable_grimoire(grimoire_id, principal)
    percentage = round(100.0 * req.current_page / req.total_pages, 2)
    rec = app_db.save_progress(
        user_id=str(principal.user_id),
        grimoire_id=grimoire_id,
        current_page=req.current_page,
        total_pages=req.total_pages,
        progress_percentage=max(0.0, min(100.0, percentage)),
        is_completed=req.current_page >= req.total_pages,
    )
    return ProgressResponse(**rec)


@app.get("/api/admin/grimoires", response_model=GrimoiresResponse)
def admin_list_grimoires(ctx: AuthContext = Depends(resolve_auth)) -> GrimoiresResponse:
    require_role(ctx, {"admin"})
    return GrimoiresResponse(grimoires=[GrimoireSummary(**r) for r in app_db.list_grimoires()])


@app.post("/api/admin/grimoires", response_model=Grimoire, status_code=201)
def admin_create_grimoire(req: GrimoireCreateRequest, ctx: AuthContext = Depends(resolve_auth)) -> Grimoire:
    require_role(ctx, {"admin"})
    title = req.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="title must not be blank")
    content = req.content.strip()
    excerpt = (req.excerpt or "").strip() or title
    rec = app_db.create_grimoire(
        title=title,
        content=content,
        content_format=req.content_format,
        excerpt=excerpt,
        author=(req.author or "").strip() or None,
        is_paid=req.is_paid,
        is_published=req.is_published,
        enable_pdf_download=req.enable_pdf_download,
        display_order=req.display_order,
        word_count=count_words(content_to_text(content, req.content_format)),
    )
    log.info("Created grimoire grimoire_id=%s title=%r", rec["grimoire_id"], title)
    return Grimoire(**rec)


@app.put("/api/admin/grimoires/{grimoire_id}", response_model=Grimoire)
def admin_update_grimoire(
    grimoire_id: int, req: GrimoireUpdateRequest, ctx: AuthContext = Depends(resolve_auth)
) -> Grimoire:
    require_role(ctx, {"admin"})
    current = _load_grimoire_or_404(grimoire_id)

    # excerpt and author may be cleared with null or a blank string; other fields ignore null.
    fields: dict[str, Any] = {
        k: v for k, v in req.model_dump(exclude_unset=True).items() if v is not None or k in _NULLABLE_FIELDS
    }
    for key in ("title", "content", "excerpt", "author"):
        if isinstance(fields.get(key), str):
            fields[key] = fields[key].strip()
    for key in _NULLABLE_FIELDS:
        if key in fields and not fields[key]:
            fields[key] = None
    if "title" in fields and not fields["title"]:
        raise HTTPException(status_code=400, detail="title must not be blank")
    if "content" in fields or "content_format" in fields:
        content = fields.get("content", current["content"])
        content_format = fields.get("content_format", current["content_format"])
        fields["word_count"] = count_words(content_to_text(content, content_format))

    rec = app_db.update_grimoire(grimoire_id, **fields)
    if not rec:
        raise HTTPException(status_code=404, detail="Grimoire not found")
    return Grimoire(**rec)


@app.delete("/api/admin/grimoires/{grimoire_id}", response_model=OkResponse)
def admin_delete_grimoire(grimoire_id: int, ctx: AuthContext = Depends(resolve_auth)) -> OkResponse:
    require_role(ctx, {"admin"})
    if not app_db.delete_grimoire(grimoire_id):
        raise HTTPException(status_code=404, detail="Grimoire not found")
    log.info("Deleted grimoire grimoire_id=%s", grimoire_id)
    return OkResponse()


@app.put("/api/admin/grimoires/{grimoire_id}/order", response_model=Grimoire)
def admin_reorder_grimoire(
    grimoire_id: int, req: GrimoireOrderRequest, ctx: AuthContext = Depends(resolve_auth)
) -> Grimoire:
    require_role(ctx, {"admin"})
    _load_grimoire_or_404(grimoire_id)
    rec = app_db.update_grimoire(grimoire_id, display_order=req.display_order)
    assert rec is not None
    return Grimoire(**rec)


@app.post("/api/admin/grimoires/{grimoire_id}/pdf")
def admin_export_grimoire_pdf(grimoire_id: int, ctx: AuthContext = Depends(resolve_auth)) -> Response:
    require_role(ctx, {"admin"})
    log.info("PDF generation requested for grimoire_id=%s", grimoire_id)
    return _pdf_response(_load_grimoire_or_404(grimoire_id))


@app.post("/api/admin/grimoires/{grimoire_id}/access", response_model=OkResponse)
def admin_grant_access(
    grimoire_id: int, req: AccessGrantRequest, ctx: AuthContext = Depends(resolve_auth)
) -> OkResponse:
    require_role(ctx, {"admin"})
    _load_grimoire_or_404(grimoire_id)
    if not app_db.get_user(req.user_id):
        raise HTTPException(status_code=404, detail="User not found")
    app_db.grant_access(user_id=req.user_id, grimoire_id=grimoire_id)
    return OkResponse()


@app.get("/api/admin/settings", response_model=AdminSettingsResponse)
def admin_get_settings(ctx: AuthContext = Depends(resolve_auth)) -> dict[str, Any]:
    require_role(ctx, {"admin"})
    try:
        return get_settings_bundle()
    except SettingsError as e:
        log.exception("Settings error")
        raise HTTPException(status_code=500, detail=str(e)) from e


@app.post("/api/admin/settings", response_model=AdminSettingsResponse)
def admin_update_settings(req: AdminSettingsUpdateRequest, ctx: AuthContext = Depends(resolve_auth)) -> dict[str, Any]:
    require_role(ctx, {"admin"})
    try:
        return update_settings(req.settings)
    except SettingsError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
