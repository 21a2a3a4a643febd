# tests/test_app.py
import io
import json
import threading
import time

import pytest
from unittest.mock import MagicMock, patch
from wsgiref.util import setup_testing_defaults

from dbclone import app
from dbclone.services.exceptions import PermissionDeniedError, TransientIOError

# ===================================================================
#  Fixture 설정
# ===================================================================

@pytest.fixture
def client(image_service, clone_service):
    """WSGI application을 직접 호출하는 간단한 클라이언트. DB 세션은 모의 객체로 대체합니다."""
    services = {'image': image_service, 'clone': clone_service}

    def request(method, path, body=None, query=""):
        raw = json.dumps(body).encode("utf-8") if body is not None else b""
        environ = {}
        setup_testing_defaults(environ)
        environ.update({
            "REQUEST_METHOD": method,
            "PATH_INFO": path,
            "QUERY_STRING": query,
            "CONTENT_LENGTH": str(len(raw)),
            "wsgi.input": io.BytesIO(raw),
        })
        captured = {}

        def start_response(status, headers):
            captured["status"] = status

        with patch("dbclone.app.SessionLocal", return_value=MagicMock()), \
                patch("dbclone.app.build_services", return_value=services):
            payload = b"".join(app.application(environ, start_response)).decode("utf-8")
        return int(captured["status"].split()[0]), json.loads(payload) if payload else None

    return request


IMAGE_BODY = {
    "name": "img-1",
    "location": "/base/img1.vhdx",
    "source_database_name": "Sales",
    "source_database_timestamp": "2026-10-01T02:00:00",
    "size_bytes": 1024,
}

CLONE_BODY = {"image_id": 1, "host_name": "hostA", "sql_instance": "SQL01", "database_name": "Sales"}

# ===================================================================
#  라우팅 및 상태 코드 테스트
# ===================================================================
class TestImageRoutes:
    def test_register_and_get_image(self, client):
        status, body = client("POST", "/v1/images", IMAGE_BODY)
        assert status == 201
        assert body["id"] == 1

        status, body = client("GET", "/v1/images/1")
        assert status == 200
        assert body["reference_count"] == 0

        status, body = client("GET", "/v1/images")
        assert [image["name"] for image in body["images"]] == ["img-1"]

    def test_duplicate_image_is_conflict(self, client):
        client("POST", "/v1/images", IMAGE_BODY)

        status, body = client("POST", "/v1/images", IMAGE_BODY)

        assert status == 409
        assert body["kind"] == "Conflict"

    def test_retire_in_use_image_is_conflict(self, client):
        client("POST", "/v1/images", IMAGE_BODY)
        client("POST", "/v1/clones", CLONE_BODY)

        status, body = client("DELETE", "/v1/images/1")

        assert status == 409
        assert "still referenced" in body["error"]

    def test_retire_image(self, client):
        client("POST", "/v1/images", IMAGE_BODY)

        status, body = client("DELETE", "/v1/images/1")

        assert status == 204
        assert body is None
        assert client("GET", "/v1/images/1")[0] == 404


class TestCloneRoutes:
    def test_clone_lifecycle(self, client):
        """생성 -> 조회 -> 검증 -> 제거 흐름이 API로 동작하는지 테스트합니다."""
        client("POST", "/v1/images", IMAGE_BODY)

        status, clone = client("POST", "/v1/clones", CLONE_BODY)
        assert status == 201
        assert clone["status"] == "Enabled"

        status, result = client("POST", "/v1/clones/1/actions/verify")
        assert status == 200
        assert result["checks"] == {"diff": True, "mounted": True, "attached": True}

        status, listed = client("GET", "/v1/clones", query="host_name=hostA")
        assert [c["id"] for c in listed["clones"]] == [1]

        status, removed = client("DELETE", "/v1/clones/1")
        assert status == 200
        assert removed["status"] == "Removed"

        assert client("DELETE", "/v1/clones/1")[0] == 404

    def test_unknown_image_is_not_found(self, client):
        status, body = client("POST", "/v1/clones", CLONE_BODY)

        assert status == 404
        assert body["kind"] == "NotFound"

    @pytest.mark.parametrize("error, expected_status, expected_kind", [
        (PermissionDeniedError("Access is denied"), 403, "PermissionDenied"),
        (TransientIOError("pool busy"), 503, "TransientIO"),
    ])
    def test_storage_errors_map_to_status(self, client, binder, error, expected_status, expected_kind):
        client("POST", "/v1/images", IMAGE_BODY)
        binder.fail("allocate_diff", *[error] * 3)

        status, body = client("POST", "/v1/clones", CLONE_BODY)

        assert status == expected_status
        assert body["kind"] == expected_kind

    def test_unknown_filter_is_bad_request(self, client):
        status, body = client("GET", "/v1/clones", query="color=blue")

        assert status == 400
        assert "color" in body["error"]

    def test_reconcile_route(self, client):
        status, summary = client("POST", "/v1/actions/reconcile")

        assert status == 200
        assert summary == {"resumed": [], "removed": [], "failed": [], "skipped": [], "ghost_diffs": []}


def test_unknown_route_is_not_found(client):
    assert client("GET", "/v2/whatever") == (404, {"error": "Not Found"})


def test_invalid_json_is_bad_request(client):
    environ = {}
    setup_testing_defaults(environ)
    environ.update({"REQUEST_METHOD": "POST", "PATH_INFO": "/v1/images",
                    "CONTENT_LENGTH": "3", "wsgi.input": io.BytesIO(b"{x}")})
    captured = {}
    with patch("dbclone.app.SessionLocal", return_value=MagicMock()), \
            patch("dbclone.app.build_services", return_value={}):
        body = b"".join(app.application(environ, lambda status, headers: captured.update(status=status)))

    assert captured["status"] == "400 Bad Request"
    assert "Invalid" in json.loads(body)["error"]

# ===================================================================
#  서비스 조립 테스트
# ===================================================================
class TestBuildServices:
    def test_image_routes_do_not_need_binder(self, monkeypatch):
        """이미지 서비스만 꺼내면 바인더(libvirt 연결)를 만들지 않는지 테스트합니다."""
        get_binder = MagicMock(side_effect=RuntimeError("libvirt is down"))
        monkeypatch.setattr(app, "get_binder", get_binder)

        services = app.build_services(MagicMock())

        assert services['image'] is not None
        get_binder.assert_not_called()
        with pytest.raises(RuntimeError, match="libvirt is down"):
            services['clone']

    def test_clone_service_is_built_once_per_request(self, monkeypatch, binder, caller):
        get_binder = MagicMock(return_value=binder)
        monkeypatch.setattr(app, "get_binder", get_binder)
        monkeypatch.setattr(app, "get_caller", MagicMock(return_value=caller))

        services = app.build_services(MagicMock())

        assert services['clone'] is services['clone']
        assert services['clone'].binder is binder
        get_binder.assert_called_once_with()
        with pytest.raises(KeyError):
            services['unknown']

    def test_list_images_when_libvirt_is_down(self, monkeypatch, image_service):
        """하이퍼바이저 연결이 안 돼도 GET /v1/images는 200으로 응답하는지 테스트합니다."""
        monkeypatch.setattr(app, "get_binder", MagicMock(side_effect=RuntimeError("libvirt is down")))
        services = app.Services(image_service, lambda: app.get_binder())
        environ = {}
        setup_testing_defaults(environ)
        environ.update({"REQUEST_METHOD": "GET", "PATH_INFO": "/v1/images"})
        captured = {}

        with patch("dbclone.app.SessionLocal", return_value=MagicMock()), \
                patch("dbclone.app.build_services", return_value=services):
            body = b"".join(app.application(environ, lambda status, headers: captured.update(status=status)))

        assert captured["status"] == "200 OK"
        assert json.loads(body) == {"images": []}

    def test_shared_binder_is_created_once(self, monkeypatch):
        """여러 요청 스레드가 동시에 바인더를 처음 꺼내도 하나만 만들어지는지 테스트합니다."""
        monkeypatch.setitem(app._shared, "binder", None)
        created = []

        def slow_binder():
            time.sleep(0.05)
            created.append(object())
            return created[-1]

        monkeypatch.setattr("dbclone.storage.libvirt_binder.LibvirtStorageBinder", slow_binder)
        results = []
        workers = [threading.Thread(target=lambda: results.append(app.get_binder())) for _ in range(8)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(5)

        assert len(created) == 1
        assert all(result is created[0] for result in results)
        assert len(results) == 8

    def test_shared_caller_is_created_once(self, monkeypatch):
        monkeypatch.setitem(app._shared, "caller", None)
        constructor = MagicMock(side_effect=lambda: object())
        monkeypatch.setattr(app, "BinderCaller", constructor)

        workers = [threading.Thread(target=app.get_caller) for _ in range(8)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(5)

        constructor.assert_called_once_with()
