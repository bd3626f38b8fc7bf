from __future__ import annotations

import re
from pathlib import Path
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient

from templo import app_db, config
from templo.main import app

ADMIN_PASSWORD = "abyss-admin-pass"
MEMBER_PASSWORD = "secret-pass"

_OBJ_RE = re.compile(rb"(\d+) 0 obj\n")


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def xref_offsets(data: bytes) -> list[int]:
    start = int(data.rsplit(b"startxref\n", 1)[1].split(b"\n", 1)[0])
    lines = data[start:].split(b"\n")
    assert lines[0] == b"xref"
    first, count = (int(v) for v in lines[1].split())
    assert first == 0
    return [int(entry[:10]) for entry in lines[2 : 2 + count]]


def pdf_objects(data: bytes) -> dict[int, bytes]:
    """Map object number to the raw text between 'N 0 obj' and 'endobj'."""
    out: dict[int, bytes] = {}
    for m in _OBJ_RE.finditer(data):
        end = data.index(b"endobj", m.end())
        out[int(m.group(1))] = data[m.end() : end]
    return out


@pytest.fixture()
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "app.sqlite"
    monkeypatch.setattr(config, "APP_DB_PATH", path)
    return path


@pytest.fixture()
def initialized_db(db_path: Path) -> Path:
    app_db.init_db()
    return db_path


@pytest.fixture()
def client(db_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    monkeypatch.setenv("TEMPLO_ADMIN_USERNAME", "admin")
    monkeypatch.setenv("TEMPLO_ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.delenv("TEMPLO_ADMIN_PASSWORD_RESET", raising=False)
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def admin_headers(client: TestClient) -> dict[str, str]:
    resp = client.post("/api/auth/login", json={"username": "admin", "password": ADMIN_PASSWORD})
    assert resp.status_code == 200
    client.cookies.clear()
    return bearer(resp.json()["token"])


@pytest.fixture()
def member_factory(client: TestClient) -> Callable[[str], tuple[str, dict[str, str]]]:
    def _create(username: str) -> tuple[str, dict[str, str]]:
        resp = client.post(
            "/api/auth/register",
            json={"username": username, "email": f"{username}@example.com", "password": MEMBER_PASSWORD},
        )
        assert resp.status_code == 201
        client.cookies.clear()
        body = resp.json()
        return body["user"]["user_id"], bearer(body["token"])

    return _create


@pytest.fixture()
def member(member_factory: Callable[[str], tuple[str, dict[str, str]]]) -> tuple[str, dict[str, str]]:
    return member_factory("neophyte")


@pytest.fixture()
def grimoire_factory(client: TestClient, admin_headers: dict[str, str]) -> Callable[..., dict]:
    def _create(**fields: object) -> dict:
        payload = {"title": "Liber Umbrae", "content": "<p>Nox et tenebrae.</p>"}
        payload.update(fields)
        resp = client.post("/api/admin/grimoires", json=payload, headers=admin_headers)
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _create
