"""Tests for the httpx transport using httpx.MockTransport."""

import threading
from urllib.parse import parse_qs

import httpx
import pytest

from geminiweb.domain.credentials import CookieSet
from geminiweb.domain.errors import (
    AuthRequiredError,
    CancelledError,
    ProtocolError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from geminiweb.domain.model_catalog import MODEL_HEADER_KEY, ModelTag
from geminiweb.interfaces.backend import RPCEntry
from geminiweb.modules.parser.envelope import encode_batch_response
from geminiweb.modules.transport.client import GeminiTransport

APP_PAGE = '<html><script>window.WIZ_global_data = {"SNlM0e":"token-123","other":"x"};</script></html>'


class FakeServer:
    """Routes requests by path; ``generate`` replies are consumed in order."""

    def __init__(self, generate=None, batch=None, upload=None, app_page=APP_PAGE):
        self.generate = list(generate or [])
        self.batch = batch
        self.upload = upload
        self.app_page = app_page
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/app":
            return httpx.Response(200, text=self.app_page)
        if path.endswith("StreamGenerate"):
            reply = self.generate.pop(0)
            if isinstance(reply, Exception):
                raise reply
            return reply
        if path.endswith("batchexecute"):
            return self.batch
        if path == "/upload":
            return self.upload
        return httpx.Response(404)

    def count(self, suffix):
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def sleeps():
    return []


def make_transport(server, sleeps, **kwargs):
    return GeminiTransport(
        CookieSet("psid-value", "psidts-value"),
        http_transport=httpx.MockTransport(server),
        sleep=sleeps.append,
        **kwargs,
    )


class TestBootstrap:

    def test_extracts_access_token(self, sleeps):
        transport = make_transport(FakeServer(), sleeps)
        assert transport.bootstrap() == "token-123"

    def test_missing_token_means_auth_required(self, sleeps):
        transport = make_transport(FakeServer(app_page="<html>Sign in</html>"), sleeps)
        with pytest.raises(AuthRequiredError):
            transport.bootstrap()

    def test_sends_cookie_header(self, sleeps):
        server = FakeServer()
        make_transport(server, sleeps).bootstrap()
        cookie = server.requests[0].headers["cookie"]
        assert "__Secure-1PSID=psid-value" in cookie
        assert "__Secure-1PSIDTS=psidts-value" in cookie


class TestGenerate:

    def test_posts_form_with_token_and_model_header(self, sleeps):
        server = FakeServer(generate=[httpx.Response(200, text="BODY")])
        transport = make_transport(server, sleeps)

        body = transport.generate('[null,"[]"]', ModelTag.G_2_5_PRO)

        assert body == "BODY"
        request = server.requests[-1]
        form = parse_qs(request.content.decode())
        assert form["at"] == ["token-123"]
        assert form["f.req"] == ['[null,"[]"]']
        assert MODEL_HEADER_KEY in request.headers
        assert request.headers["content-type"].startswith("application/x-www-form-urlencoded")

    def test_unspecified_model_sends_no_model_header(self, sleeps):
        server = FakeServer(generate=[httpx.Response(200, text="BODY")])
        make_transport(server, sleeps).generate("payload")
        assert MODEL_HEADER_KEY not in server.requests[-1].headers

    def test_server_error_is_retried_with_backoff(self, sleeps):
        server = FakeServer(generate=[httpx.Response(503), httpx.Response(200, text="OK")])
        transport = make_transport(server, sleeps)

        assert transport.generate("payload") == "OK"
        assert server.count("StreamGenerate") == 2
        assert sleeps == [0.5]

    def test_gives_up_after_max_attempts(self, sleeps):
        server = FakeServer(generate=[httpx.Response(500)] * 3)
        transport = make_transport(server, sleeps, max_attempts=3)

        with pytest.raises(TransientError):
            transport.generate("payload")
        assert server.count("StreamGenerate") == 3
        assert sleeps == [0.5, 1.0]

    def test_backoff_is_capped(self, sleeps):
        transport = make_transport(FakeServer(), sleeps, backoff_base=1.0, backoff_max=3.0)
        assert [transport._calculate_backoff_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 3.0, 3.0]

    def test_network_error_is_transient(self, sleeps):
        request = httpx.Request("POST", "https://gemini.google.com/")
        server = FakeServer(generate=[httpx.ConnectError("boom", request=request)] * 2)
        transport = make_transport(server, sleeps, max_attempts=2)

        with pytest.raises(TransientError):
            transport.generate("payload")
        assert sleeps == [0.5]

    def test_rate_limit_is_not_retried(self, sleeps):
        server = FakeServer(generate=[httpx.Response(429, headers={"Retry-After": "30"})])
        transport = make_transport(server, sleeps)

        with pytest.raises(RateLimitedError) as exc_info:
            transport.generate("payload")
        assert exc_info.value.retry_after == 30.0
        assert "30s" in exc_info.value.banner
        assert sleeps == []

    def test_client_error_is_protocol_error(self, sleeps):
        server = FakeServer(generate=[httpx.Response(400, text="bad request")])
        with pytest.raises(ProtocolError):
            make_transport(server, sleeps).generate("payload")

    def test_redirect_to_login_is_auth_required(self, sleeps):
        server = FakeServer(generate=[
            httpx.Response(302, headers={"Location": "https://accounts.google.com/ServiceLogin"}),
        ])
        with pytest.raises(AuthRequiredError):
            make_transport(server, sleeps).generate("payload")

    def test_unauthorized_refreshes_once_and_reissues(self, sleeps):
        server = FakeServer(generate=[httpx.Response(401), httpx.Response(200, text="OK")])
        calls = []

        def refresh():
            calls.append(1)
            return CookieSet("fresh-psid")

        transport = make_transport(server, sleeps, refresh_callback=refresh)

        assert transport.generate("payload") == "OK"
        assert len(calls) == 1
        assert "__Secure-1PSID=fresh-psid" in server.requests[-1].headers["cookie"]
        # Refreshed cookies require a new access token
        assert server.count("/app") == 2

    def test_second_unauthorized_is_surfaced(self, sleeps):
        server = FakeServer(generate=[httpx.Response(401), httpx.Response(401)])
        calls = []

        def refresh():
            calls.append(1)
            return CookieSet("fresh-psid")

        transport = make_transport(server, sleeps, refresh_callback=refresh)
        with pytest.raises(AuthRequiredError):
            transport.generate("payload")
        assert len(calls) == 1

    def test_refresh_without_new_cookies_surfaces_auth_error(self, sleeps):
        server = FakeServer(generate=[httpx.Response(401)])
        transport = make_transport(server, sleeps, refresh_callback=lambda: None)
        with pytest.raises(AuthRequiredError):
            transport.generate("payload")
        assert server.count("StreamGenerate") == 1

    def test_deadline_bounds_the_retry_loop(self, sleeps):
        clock = FakeClock()
        responses = []

        def slow_failure(request):
            if request.url.path == "/app":
                return httpx.Response(200, text=APP_PAGE)
            clock.now += 100
            responses.append(request)
            return httpx.Response(503)

        transport = GeminiTransport(
            CookieSet("psid"),
            http_transport=httpx.MockTransport(slow_failure),
            sleep=sleeps.append,
            clock=clock,
            send_deadline=150,
            max_attempts=10,
        )
        with pytest.raises(TransientError, match="deadline"):
            transport.generate("payload")
        assert len(responses) == 2

    def test_cancelled_before_sending(self, sleeps):
        server = FakeServer(generate=[httpx.Response(200, text="OK")])
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(CancelledError):
            make_transport(server, sleeps).generate("payload", cancel_event=cancel)
        assert server.count("StreamGenerate") == 0

    def test_cancel_during_backoff(self, sleeps):
        """Backoff waits on the cancel event instead of sleeping."""
        server = FakeServer(generate=[httpx.Response(503), httpx.Response(200, text="OK")])
        cancel = threading.Event()
        transport = make_transport(server, sleeps, backoff_base=5.0)

        original = cancel.wait

        def wait(timeout=None):
            cancel.set()
            return original(0)

        cancel.wait = wait
        with pytest.raises(CancelledError):
            transport.generate("payload", cancel_event=cancel)
        assert server.count("StreamGenerate") == 1


class TestExecute:

    def test_batch_results_in_request_order(self, sleeps):
        server = FakeServer(batch=httpx.Response(200, text=encode_batch_response([
            ("CNgdBe", "custom-data", "custom"),
            ("CNgdBe", "system-data", "system"),
        ])))
        transport = make_transport(server, sleeps)

        results = transport.execute([
            RPCEntry("CNgdBe", "[4]", "system"),
            RPCEntry("CNgdBe", "[2]", "custom"),
        ])

        assert results == ["system-data", "custom-data"]
        assert server.requests[-1].url.params["rpcids"] == "CNgdBe,CNgdBe"

    def test_empty_batch_rejected(self, sleeps):
        with pytest.raises(ValidationError):
            make_transport(FakeServer(), sleeps).execute([])


class TestUpload:

    def test_resource_id_from_text_body(self, sleeps):
        server = FakeServer(upload=httpx.Response(200, text="/contrib_service/ttl_1d/abc"))
        transport = make_transport(server, sleeps)

        resource_id = transport.upload_file(b"hello", "notes.txt", "text/plain")

        assert resource_id == "/contrib_service/ttl_1d/abc"
        request = server.requests[-1]
        assert request.headers["content-type"].startswith("multipart/form-data")
        assert request.headers["x-goog-upload-command"] == "upload, finalize"
        assert b"hello" in request.content

    def test_resource_id_from_json_body(self, sleeps):
        server = FakeServer(upload=httpx.Response(200, json={"resourceId": "res-42"}))
        assert make_transport(server, sleeps).upload_image(b"\x89PNG", "a.png", "image/png") == "res-42"


class TestFetchImage:

    def test_returns_body_and_content_type(self, sleeps):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})

        transport = GeminiTransport(
            CookieSet("psid-value"), http_transport=httpx.MockTransport(handler), sleep=sleeps.append
        )

        body, content_type = transport.fetch_image("https://lh3.googleusercontent.com/abc=s2048")

        assert body == b"\x89PNG"
        assert content_type == "image/png"
        assert seen[0].headers["accept"].startswith("image/")
        assert "__Secure-1PSID=psid-value" in seen[0].headers["cookie"]

    def test_redirect_is_followed(self, sleeps):
        def handler(request):
            if request.url.path == "/old":
                return httpx.Response(302, headers={"location": "https://images.example/new.jpg"})
            return httpx.Response(200, content=b"jpeg", headers={"content-type": "image/jpeg"})

        transport = GeminiTransport(
            CookieSet("psid-value"), http_transport=httpx.MockTransport(handler), sleep=sleeps.append
        )

        assert transport.fetch_image("https://images.example/old") == (b"jpeg", "image/jpeg")

    def test_non_image_body_is_protocol_error(self, sleeps):
        def handler(request):
            return httpx.Response(200, text="<html>", headers={"content-type": "text/html"})

        transport = GeminiTransport(
            CookieSet("psid-value"), http_transport=httpx.MockTransport(handler), sleep=sleeps.append
        )

        with pytest.raises(ProtocolError):
            transport.fetch_image("https://images.example/a")
