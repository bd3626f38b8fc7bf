from __future__ import annotations

import io

from pypdf import PdfReader

from conftest import ADMIN_PASSWORD, MEMBER_PASSWORD, bearer, pdf_objects


def test_health(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "db_ready": True}


def test_register_login_and_me(client) -> None:
    resp = client.post(
        "/api/auth/register",
        json={
            "username": "adepta",
            "email": "Adepta@Example.com",
            "password": MEMBER_PASSWORD,
            "magical_name": "Soror Nox",
        },
    )
    assert resp.status_code == 201
    assert resp.json()["user"]["role"] == "member"
    client.cookies.clear()

    resp = client.post("/api/auth/login", json={"username": "adepta@example.com", "password": MEMBER_PASSWORD})
    assert resp.status_code == 200
    token = resp.json()["token"]
    client.cookies.clear()

    me = client.get("/api/auth/me", headers=bearer(token)).json()
    assert me["authenticated"] is True
    assert me["username"] == "adepta"
    assert me["email"] == "adepta@example.com"
    assert me["magical_name"] == "Soror Nox"


def test_login_sets_session_cookie(client) -> None:
    resp = client.post("/api/auth/login", json={"username": "admin", "password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    assert "templo_session" in resp.cookies
    assert client.get("/api/auth/me").json()["role"] == "admin"


def test_duplicate_registration_is_rejected(client, member) -> None:
    resp = client.post(
        "/api/auth/register",
        json={"username": "neophyte", "email": "other@example.com", "password": MEMBER_PASSWORD},
    )
    assert resp.status_code == 400
    resp = client.post(
        "/api/auth/register",
        json={"username": "other", "email": "neophyte@example.com", "password": MEMBER_PASSWORD},
    )
    assert resp.status_code == 400


def test_invalid_registration_payload(client) -> None:
    resp = client.post("/api/auth/register", json={"username": "ab", "email": "nope", "password": "x"})
    assert resp.status_code == 422


def test_bad_credentials(client, member) -> None:
    resp = client.post("/api/auth/login", json={"username": "neophyte", "password": "wrong-pass"})
    assert resp.status_code == 401
    resp = client.post("/api/auth/login", json={"username": "nobody", "password": "wrong-pass"})
    assert resp.status_code == 401


def test_anonymous_me_is_unauthorized(client) -> None:
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers=bearer("not-a-token")).status_code == 401


def test_logout_invalidates_token(client, member) -> None:
    _, headers = member
    assert client.get("/api/auth/me", headers=headers).status_code == 200
    resp = client.post("/api/auth/logout", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["authenticated"] is False
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_change_password(client, member) -> None:
    _, headers = member
    resp = client.post(
        "/api/auth/change-password",
        json={"current_password": "wrong-pass", "new_password": "brand-new-pass"},
        headers=headers,
    )
    assert resp.status_code == 401

    resp = client.post(
        "/api/auth/change-password",
        json={"current_password": MEMBER_PASSWORD, "new_password": "brand-new-pass"},
        headers=headers,
    )
    assert resp.status_code == 200
    client.cookies.clear()
    assert client.post("/api/auth/login", json={"username": "neophyte", "password": MEMBER_PASSWORD}).status_code == 401
    assert client.post("/api/auth/login", json={"username": "neophyte", "password": "brand-new-pass"}).status_code == 200


def test_admin_routes_require_admin(client, member) -> None:
    _, headers = member
    assert client.get("/api/admin/grimoires").status_code == 401
    assert client.get("/api/admin/grimoires", headers=headers).status_code == 403
    assert client.post("/api/admin/grimoires", json={"title": "X"}, headers=headers).status_code == 403
    assert client.get("/api/admin/settings", headers=headers).status_code == 403
    assert client.post("/api/admin/grimoires/1/pdf", headers=headers).status_code == 403


def test_admin_grimoire_crud(client, admin_headers, grimoire_factory) -> None:
    created = grimoire_factory(title="  Liber Lucis  ", content="<p>Um dois tres</p>")
    gid = created["grimoire_id"]
    assert created["title"] == "Liber Lucis"
    assert created["excerpt"] == "Liber Lucis"
    assert created["word_count"] == 3

    resp = client.put(
        f"/api/admin/grimoires/{gid}",
        json={"content": "# Caput\n\nquattuor quinque", "content_format": "markdown"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["word_count"] == 3
    assert resp.json()["title"] == "Liber Lucis"

    resp = client.put(f"/api/admin/grimoires/{gid}/order", json={"display_order": 7}, headers=admin_headers)
    assert resp.json()["display_order"] == 7

    listed = client.get("/api/admin/grimoires", headers=admin_headers).json()["grimoires"]
    assert [g["grimoire_id"] for g in listed] == [gid]

    assert client.delete(f"/api/admin/grimoires/{gid}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/admin/grimoires/{gid}", headers=admin_headers).status_code == 404
    assert client.put(f"/api/admin/grimoires/{gid}", json={"title": "X"}, headers=admin_headers).status_code == 404


def test_blank_title_is_rejected(client, admin_headers) -> None:
    resp = client.post("/api/admin/grimoires", json={"title": "   "}, headers=admin_headers)
    assert resp.status_code == 400


def test_public_listing_hides_unpublished(client, grimoire_factory) -> None:
    grimoire_factory(title="Second", display_order=2)
    grimoire_factory(title="First", display_order=1)
    grimoire_factory(title="Hidden", is_published=False)

    titles = [g["title"] for g in client.get("/api/grimoires").json()["grimoires"]]
    assert titles == ["First", "Second"]


def test_reading_requires_login(client, grimoire_factory) -> None:
    gid = grimoire_factory()["grimoire_id"]
    assert client.get(f"/api/grimoires/{gid}").status_code == 401


def test_unpublished_grimoire_is_not_found_for_members(client, member, grimoire_factory) -> None:
    _, headers = member
    gid = grimoire_factory(is_published=False)["grimoire_id"]
    assert client.get(f"/api/grimoires/{gid}", headers=headers).status_code == 404
    assert client.get("/api/grimoires/9999", headers=headers).status_code == 404


def test_paid_grimoire_requires_access_grant(client, admin_headers, member, grimoire_factory) -> None:
    user_id, headers = member
    gid = grimoire_factory(is_paid=True)["grimoire_id"]
    assert client.get(f"/api/grimoires/{gid}", headers=headers).status_code == 403

    resp = client.post(f"/api/admin/grimoires/{gid}/access", json={"user_id": user_id}, headers=admin_headers)
    assert resp.status_code == 200
    resp = client.get(f"/api/grimoires/{gid}", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["content"] == "<p>Nox et tenebrae.</p>"


def test_access_grant_for_unknown_user(client, admin_headers, grimoire_factory) -> None:
    gid = grimoire_factory(is_paid=True)["grimoire_id"]
    resp = client.post(f"/api/admin/grimoires/{gid}/access", json={"user_id": "ghost"}, headers=admin_headers)
    assert resp.status_code == 404


def test_member_pdf_download_requires_flag(client, member, grimoire_factory) -> None:
    _, headers = member
    locked = grimoire_factory(title="Locked")["grimoire_id"]
    assert client.get(f"/api/grimoires/{locked}/pdf", headers=headers).status_code == 403

    open_id = grimoire_factory(title="Open Book", enable_pdf_download=True)["grimoire_id"]
    resp = client.get(f"/api/grimoires/{open_id}/pdf", headers=headers)
    assert resp.status_code == 200
    assert resp.content.startswith(b"%PDF-1.4")


def test_admin_pdf_export(client, admin_headers, grimoire_factory) -> None:
    gid = grimoire_factory(title="Liber Umbrae: Vol. 1", author="Frater Ignis")["grimoire_id"]
    resp = client.post(f"/api/admin/grimoires/{gid}/pdf", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/pdf"
    assert resp.headers["content-disposition"] == 'attachment; filename="Liber_Umbrae_Vol_1.pdf"'
    assert resp.headers["cache-control"] == "no-cache"

    data = resp.content
    assert data.endswith(b"%%EOF")
    assert b"(Frater Ignis) Tj" in data
    reader = PdfReader(io.BytesIO(data))
    assert len(reader.pages) == 1
    assert "Nox et tenebrae." in reader.pages[0].extract_text()


def test_pdf_export_of_missing_grimoire(client, admin_headers) -> None:
    assert client.post("/api/admin/grimoires/4242/pdf", headers=admin_headers).status_code == 404


def test_blank_content_renders_placeholder(client, admin_headers, grimoire_factory) -> None:
    gid = grimoire_factory(content="   ")["grimoire_id"]
    data = client.post(f"/api/admin/grimoires/{gid}/pdf", headers=admin_headers).content
    assert "Conteúdo não disponível".encode("latin-1") in data
    assert b"(Templo do Abismo) Tj" in data


def test_settings_drive_pagination(client, admin_headers, grimoire_factory) -> None:
    content = "<br>".join(f"linha {i}" for i in range(12))
    gid = grimoire_factory(content=content)["grimoire_id"]

    data = client.post(f"/api/admin/grimoires/{gid}/pdf", headers=admin_headers).content
    assert b"/Count 1" in pdf_objects(data)[2]

    resp = client.post(
        "/api/admin/settings",
        json={"settings": {"pdf": {"max_lines_per_page": 5, "max_line_width": 80}}},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert resp.json()["effective"]["pdf"]["max_lines_per_page"] == 5

    data = client.post(f"/api/admin/grimoires/{gid}/pdf", headers=admin_headers).content
    assert b"/Count 3" in pdf_objects(data)[2]


def test_invalid_settings_are_rejected(client, admin_headers) -> None:
    resp = client.post(
        "/api/admin/settings",
        json={"settings": {"pdf": {"max_lines_per_page": 0}}},
        headers=admin_headers,
    )
    assert resp.status_code == 400
    effective = client.get("/api/admin/settings", headers=admin_headers).json()["effective"]
    assert effective["pdf"]["max_lines_per_page"] == 40


def test_settings_that_overflow_the_page_are_rejected(client, admin_headers) -> None:
    resp = client.post(
        "/api/admin/settings",
        json={"settings": {"pdf": {"max_lines_per_page": 60, "max_line_width": 80}}},
        headers=admin_headers,
    )
    assert resp.status_code == 400
    assert "fit" in resp.json()["detail"]


def test_excerpt_and_author_can_be_cleared(client, admin_headers, grimoire_factory) -> None:
    gid = grimoire_factory(excerpt="Breve", author="Frater Ignis")["grimoire_id"]
    resp = client.put(
        f"/api/admin/grimoires/{gid}", json={"excerpt": None, "author": "  "}, headers=admin_headers
    )
    assert resp.status_code == 200
    assert resp.json()["excerpt"] is None
    assert resp.json()["author"] is None
    assert resp.json()["title"] == "Liber Umbrae"

    resp = client.put(f"/api/admin/grimoires/{gid}", json={"title": None}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["title"] == "Liber Umbrae"


def test_reading_progress(client, member, grimoire_factory) -> None:
    _, headers = member
    gid = grimoire_factory()["grimoire_id"]

    initial = client.get(f"/api/user/grimoire-progress/{gid}", headers=headers).json()
    assert initial["current_page"] == 1
    assert initial["is_completed"] is False

    resp = client.post(
        f"/api/user/grimoire-progress/{gid}", json={"current_page": 2, "total_pages": 8}, headers=headers
    )
    assert resp.status_code == 200
    assert resp.json()["progress_percentage"] == 25.0
    assert resp.json()["is_completed"] is False

    done = client.post(
        f"/api/user/grimoire-progress/{gid}", json={"current_page": 8, "total_pages": 8}, headers=headers
    ).json()
    assert done["is_completed"] is True
    assert done["completed_at"]

    # rereading from the start keeps the completion
    again = client.post(
        f"/api/user/grimoire-progress/{gid}", json={"current_page": 1, "total_pages": 8}, headers=headers
    ).json()
    assert again["current_page"] == 1
    assert again["is_completed"] is True
    assert again["completed_at"] == done["completed_at"]


def test_progress_rejects_invalid_pages(client, member, grimoire_factory) -> None:
    _, headers = member
    gid = grimoire_factory()["grimoire_id"]
    resp = client.post(
        f"/api/user/grimoire-progress/{gid}", json={"current_page": 0, "total_pages": 8}, headers=headers
    )
    assert resp.status_code == 422
