"""
Tests for the /records HTTP surface
"""

import json
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.routers.records import get_record_service, router
from app.services.record_service import RecordService


@pytest.fixture
def client(session_factory, blob_store):
    app = FastAPI()
    app.include_router(router)
    service = RecordService(session_factory, blob_store)
    app.dependency_overrides[get_record_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client


def _create(client, name="Uogashi Nihon-ichi", files=(), captions=(), **extra):
    data = {"name": name, "rating": "4", "genre": "Sushi", **extra}
    if captions:
        data["captions"] = list(captions)
    return client.post("/records", data=data, files=list(files) or None)


def _png(name):
    return ("images", (name, b"\x89PNG\r\n", "image/png"))


class TestRecordsApi:

    def test_create_with_photos(self, client):
        response = _create(client, files=[_png("a.png"), _png("b.png")], captions=["front", ""], mapUrl="https://maps.example/x")

        assert response.status_code == 201
        body = response.json()
        assert body["external_link_url"] == "https://maps.example/x"
        assert body["status"] == "VISITED"
        assert [a["caption"] for a in body["attachments"]] == ["front", None]
        assert body["attachment_failures"] == []

    def test_create_rejects_bad_rating(self, client):
        response = client.post("/records", data={"name": "X", "rating": "9", "genre": "Sushi"})

        assert response.status_code == 422

    def test_create_reports_failed_upload(self, client, blob_store):
        blob_store.fail_put_names = {"bad.png"}

        response = _create(client, files=[_png("good.png"), _png("bad.png")])

        assert response.status_code == 201
        body = response.json()
        assert len(body["attachments"]) == 1
        assert body["attachment_failures"][0]["phase"] == "upload"
        assert body["attachment_failures"][0]["filename"] == "bad.png"

    def test_get_missing_record(self, client):
        assert client.get("/records/12345").status_code == 404

    def test_update_round_trip(self, client):
        created = _create(client, files=[_png("a.png"), _png("b.png"), _png("c.png")], captions=["A", "B", "C"]).json()
        first, second, third = created["attachments"]

        response = client.put(
            f"/records/{created['id']}",
            data={
                "rating": "2",
                "deletedAttachmentIds": json.dumps([second["id"]]),
                "captionEdits": json.dumps({str(first["id"]): "A!"}),
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["rating"] == 2
        assert body["name"] == created["name"]
        assert [(a["id"], a["caption"]) for a in body["attachments"]] == [(first["id"], "A!"), (third["id"], "C")]

    def test_update_with_malformed_delta_still_applies_rest(self, client):
        created = _create(client, files=[_png("a.png")], captions=["A"]).json()

        response = client.put(
            f"/records/{created['id']}",
            data={"deletedAttachmentIds": "[oops", "captionEdits": json.dumps({str(created["attachments"][0]["id"]): "B"})},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["attachments"][0]["caption"] == "B"
        assert body["attachment_failures"][0]["phase"] == "validation"

    def test_update_missing_record(self, client):
        assert client.put("/records/999", data={"rating": "3"}).status_code == 404

    def test_update_missing_record_does_not_read_uploads(self, client, blob_store):
        with patch("app.routers.records._read_additions", new_callable=AsyncMock) as read_additions:
            response = client.put("/records/999", data={"rating": "3"}, files=[_png("a.png"), _png("b.png")])

        assert response.status_code == 404
        read_additions.assert_not_called()
        assert blob_store.put_calls == []

    def test_list_filters(self, client):
        _create(client, name="Sushi Dai")
        _create(client, name="Ramen Nagi", genre="Ramen", status="WANT_TO_GO")

        assert [r["name"] for r in client.get("/records", params={"genre": "Ramen"}).json()] == ["Ramen Nagi"]
        assert len(client.get("/records", params={"genre": "All", "status": "All"}).json()) == 2
        assert client.get("/records", params={"status": "MAYBE"}).status_code == 422

    def test_delete(self, client, blob_store):
        created = _create(client, files=[_png("a.png"), _png("b.png")]).json()

        response = client.delete(f"/records/{created['id']}")

        assert response.status_code == 200
        assert response.json() == {"message": "Deleted successfully", "attachment_failures": []}
        assert blob_store.blobs == {}
        assert client.get(f"/records/{created['id']}").status_code == 404
        assert client.delete(f"/records/{created['id']}").status_code == 404
