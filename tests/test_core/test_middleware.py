import asyncio
from unittest.mock import patch

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from core.exceptions import ConflictError, DatabaseError
from core.middleware import (
    CorrelationMiddleware,
    ErrorHandlingMiddleware,
    PerformanceMiddleware,
    RequestValidationMiddleware,
    create_error_response,
    get_client_ip,
)
from core.security_middleware import (
    SecurityHeadersMiddleware,
    SessionAuthMiddleware,
    is_public_path,
)
from core.sessions import MemorySessionBackend, init_session_store


class TestCorrelationMiddleware:
    """Test CorrelationMiddleware functionality."""

    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_middleware(CorrelationMiddleware)

        @app.get("/test")
        async def endpoint(request: Request):
            return {"correlation_id": request.state.correlation_id}

        return TestClient(app)

    def test_correlation_id_generation(self, client):
        response = client.get("/test")

        data = response.json()
        assert data["correlation_id"]
        assert response.headers["X-Correlation-ID"] == data["correlation_id"]

    def test_existing_correlation_id_preserved(self, client):
        response = client.get("/test", headers={"X-Correlation-ID": "corr-123"})

        assert response.json()["correlation_id"] == "corr-123"

    def test_request_id_header_is_used(self, client):
        response = client.get("/test", headers={"X-Request-ID": "req-9"})

        assert response.headers["X-Correlation-ID"] == "req-9"


class TestErrorHandlingMiddleware:
    """Test the uniform error body."""

    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_middleware(ErrorHandlingMiddleware)
        app.add_middleware(CorrelationMiddleware)

        @app.get("/conflict")
        async def conflict():
            raise ConflictError("You have already liked this post.", {"post_id": 3})

        @app.get("/database")
        async def database():
            raise DatabaseError("insert", "disk I/O error")

        @app.get("/crash")
        async def crash():
            raise RuntimeError("boom")

        return TestClient(app, raise_server_exceptions=False)

    def test_application_error(self, client):
        response = client.get("/conflict", headers={"X-Correlation-ID": "c-1"})

        assert response.status_code == 409
        assert response.json() == {
            "error": {
                "type": "ConflictError",
                "code": "CONFLICT",
                "message": "You have already liked this post.",
                "correlation_id": "c-1",
                "details": {"post_id": 3},
            }
        }

    def test_server_side_error_hides_details(self, client):
        response = client.get("/database")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "DATABASE_ERROR"
        assert "details" not in error

    def test_unexpected_error(self, client):
        response = client.get("/crash")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"
        assert "boom" not in response.text


class TestPerformanceMiddleware:
    def test_process_time_header(self):
        app = FastAPI()
        app.add_middleware(PerformanceMiddleware)

        @app.get("/test")
        async def endpoint():
            return {"ok": True}

        response = TestClient(app).get("/test")

        assert float(response.headers["X-Process-Time"]) >= 0

    def test_slow_request_is_logged(self):
        app = FastAPI()
        app.add_middleware(PerformanceMiddleware, slow_request_seconds=0.0)

        @app.get("/slow")
        async def endpoint():
            await asyncio.sleep(0.01)
            return {"ok": True}

        with patch("core.middleware.logger") as mock_logger:
            TestClient(app).get("/slow")

        message = mock_logger.warning.call_args.args[0]
        assert message.startswith("Slow request detected")


class TestRequestValidationMiddleware:
    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_middleware(RequestValidationMiddleware, max_request_size=100)

        @app.post("/test")
        async def endpoint():
            return {"ok": True}

        return TestClient(app)

    def test_request_too_large(self, client):
        response = client.post("/test", content=b"x" * 200, headers={"Content-Type": "application/json"})

        assert response.status_code == 413
        assert response.json()["error"]["code"] == "REQUEST_TOO_LARGE"

    def test_unsupported_content_type(self, client):
        response = client.post("/test", content=b"x", headers={"Content-Type": "text/plain"})

        assert response.status_code == 415

    def test_bodyless_post_is_allowed(self, client):
        assert client.post("/test").status_code == 200

    def test_form_post_is_allowed(self, client):
        assert client.post("/test", data={"a": "b"}).status_code == 200


class TestSessionAuthMiddleware:
    """Test the session auth gate."""

    @pytest.fixture
    def store(self):
        return init_session_store(MemorySessionBackend(), ttl_seconds=3600)

    @pytest.fixture
    def client(self, store):
        app = FastAPI()
        app.add_middleware(SessionAuthMiddleware)

        @app.get("/")
        async def root():
            return {"page": "root"}

        @app.get("/login")
        async def login_page():
            return {"page": "login"}

        @app.get("/profile")
        async def profile(request: Request):
            return {"username": request.state.session.username}

        return TestClient(app)

    def test_public_paths_pass_without_session(self, client):
        assert client.get("/").status_code == 200
        assert client.get("/login").status_code == 200

    def test_protected_path_redirects_to_login(self, client):
        response = client.get("/profile", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/login"
        assert "set-cookie" not in response.headers

    async def test_live_session_is_attached(self, client, store):
        session = await store.create(1, "alice", "a@x.com")
        client.cookies.set("session_id", session.session_id)

        response = client.get("/profile", follow_redirects=False)

        assert response.status_code == 200
        assert response.json() == {"username": "alice"}

    def test_stale_cookie_is_cleared(self, client):
        client.cookies.set("session_id", "expired-session")

        response = client.get("/profile", follow_redirects=False)

        assert response.status_code == 302
        assert 'session_id=""' in response.headers["set-cookie"]


class TestSecurityHeadersMiddleware:
    def test_headers_are_added(self):
        app = FastAPI()
        app.add_middleware(SecurityHeadersMiddleware)

        @app.get("/test")
        async def endpoint():
            return {"ok": True}

        response = TestClient(app).get("/test")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "max-age" in response.headers["Strict-Transport-Security"]


class TestHelpers:
    @pytest.mark.parametrize(
        "path,public",
        [
            ("/", True),
            ("/login", True),
            ("/monitoring/ping", True),
            ("/docs", True),
            ("/profile", False),
            ("/loginx", False),
            ("/home/10", False),
        ],
    )
    def test_is_public_path(self, path, public):
        assert is_public_path(path) is public

    def test_get_client_ip_prefers_forwarded_for(self):
        request = Request(
            {
                "type": "http",
                "headers": [(b"x-forwarded-for", b"10.0.0.1, 10.0.0.2")],
                "client": ("127.0.0.1", 1234),
            }
        )

        assert get_client_ip(request) == "10.0.0.1"

    def test_get_client_ip_falls_back_to_peer(self):
        request = Request({"type": "http", "headers": [], "client": ("127.0.0.1", 1234)})

        assert get_client_ip(request) == "127.0.0.1"

    def test_create_error_response_omits_empty_fields(self):
        response = create_error_response("NotFound", "NOT_FOUND", "missing", status_code=404)

        assert response.status_code == 404
        assert response.body == b'{"error":{"type":"NotFound","code":"NOT_FOUND","message":"missing"}}'
