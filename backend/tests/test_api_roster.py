"""
Roster API - status codes, payload shapes and private caching.
"""
from __future__ import annotations

import pytest

from utils.api import client_as, wire

pytestmark = pytest.mark.anyio("asyncio")


def _assert_private(r):
    cc = r.headers.get("Cache-Control", "")
    assert "private" in cc and "no-store" in cc


@pytest.mark.anyio
async def test_remove_member_returns_membership_and_audit_id(storage):
    engine = wire(storage)
    async with client_as(engine, "t-anna") as c:
        r = await c.post("/api/classes/c-math-7/members/s-1/removal", json={"reason": "moved to 7b"})

    assert r.status_code == 200
    _assert_private(r)
    body = r.json()
    assert body["status"] == "ok"
    assert body["membership"]["status"] == "removed"
    assert body["membership"]["reason"] == "moved to 7b"
    assert isinstance(body["audit_id"], int)


@pytest.mark.anyio
@pytest.mark.parametrize("payload", [{}, {"reason": ""}, {"reason": "   "}])
async def test_remove_without_reason_is_400(storage, payload):
    engine = wire(storage)
    async with client_as(engine, "t-anna") as c:
        r = await c.post("/api/classes/c-math-7/members/s-1/removal", json=payload)
    assert r.status_code == 400
    assert r.json() == {"status": "invalid-input", "error": "missing_reason"}


@pytest.mark.anyio
async def test_remove_twice_is_404_not_enrolled(storage):
    engine = wire(storage)
    async with client_as(engine, "t-anna") as c:
        first = await c.post("/api/classes/c-math-7/members/s-1/removal", json={"reason": "left"})
        second = await c.post("/api/classes/c-math-7/members/s-1/removal", json={"reason": "left"})
    assert first.status_code == 200
    assert second.status_code == 404
    assert second.json()["error"] == "not_enrolled"
    assert second.json()["status"] == "not-found"


@pytest.mark.anyio
async def test_non_owner_teacher_gets_403(storage):
    engine = wire(storage)
    async with client_as(engine, "t-ben") as c:
        r = await c.post("/api/classes/c-math-7/members/s-1/removal", json={"reason": "x"})
    assert r.status_code == 403
    _assert_private(r)
    assert r.json() == {"status": "denied", "error": "out_of_scope"}


@pytest.mark.anyio
async def test_add_member_then_conflict(storage):
    engine = wire(storage)
    async with client_as(engine, "t-anna") as c:
        created = await c.post("/api/classes/c-math-7/members", json={"student_id": "s-2"})
        again = await c.post("/api/classes/c-math-7/members", json={"student_id": "s-2"})
    assert created.status_code == 201
    assert created.json()["membership"]["status"] == "active"
    assert created.json()["reactivated"] is False
    assert again.status_code == 409
    assert again.json()["error"] == "already_enrolled"


@pytest.mark.anyio
async def test_list_members_and_unknown_class(storage):
    engine = wire(storage)
    async with client_as(engine, "t-anna") as c:
        listed = await c.get("/api/classes/c-math-7/members")
        missing = await c.get("/api/classes/c-none/members")
    assert listed.status_code == 200
    assert listed.json()["title"] == "Mathematik 7a"
    assert [m["student_id"] for m in listed.json()["members"]] == ["s-1"]
    assert missing.status_code == 404
    assert missing.json()["error"] == "class_not_found"


@pytest.mark.anyio
async def test_export_roster_as_csv_attachment(storage):
    engine = wire(storage)
    async with client_as(engine, "t-anna") as c:
        r = await c.get("/api/classes/c-math-7/roster/export", params={"format": "csv"})
        bad = await c.get("/api/classes/c-math-7/roster/export", params={"format": "pdf"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert 'filename="roster-c-math-7.csv"' in r.headers["content-disposition"]
    _assert_private(r)
    assert r.text.splitlines()[0].startswith("class_id,student_id,status")
    assert bad.status_code == 400
    assert bad.json()["error"] == "invalid_format"


@pytest.mark.anyio
async def test_cross_site_write_is_rejected(storage):
    engine = wire(storage)
    async with client_as(engine, "t-anna") as c:
        r = await c.post(
            "/api/classes/c-math-7/members/s-1/removal",
            json={"reason": "x"},
            headers={"Origin": "http://evil.example"},
        )
        same = await c.post(
            "/api/classes/c-math-7/members/s-1/removal",
            json={"reason": "x"},
            headers={"Origin": "http://test"},
        )
    assert r.status_code == 403
    assert r.json()["error"] == "csrf_violation"
    assert same.status_code == 200


@pytest.mark.anyio
async def test_strict_csrf_requires_origin(storage, monkeypatch):
    monkeypatch.setenv("STRICT_CSRF", "true")
    engine = wire(storage)
    async with client_as(engine, "t-anna") as c:
        r = await c.post("/api/classes/c-math-7/members", json={"student_id": "s-2"})
    assert r.status_code == 403
    assert r.json()["error"] == "csrf_violation"
