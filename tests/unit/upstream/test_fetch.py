"""Tests for the two-stage fetch protocol."""

import asyncio

import httpx
import pytest
from fakes import Reply

from irgateway.errors import (
    FetchStage,
    SessionRejectedError,
    UpstreamAuthExpiredError,
    UpstreamRequestError,
)

BLOB_URL = "https://blobs.example.net/blob/777"


class TestDirectFetch:
    """Tests for responses without a pointer."""

    @pytest.mark.asyncio
    async def test_doc_with_token_cookie(self, service, fake_upstream):
        """Test fetching /data/doc with one login cycle and a bearer header from the probe cookie."""
        fake_upstream.script("POST", "/auth", Reply())
        fake_upstream.script("GET", "/data/doc", Reply(json={"probe": True}, cookies=["authtoken123=abc; Path=/"]))
        fake_upstream.script("GET", "/data/doc", Reply(json={"results": {"get": {}}}))

        body = await service.fetch_json("/data/doc")

        assert body == {"results": {"get": {}}}
        assert fake_upstream.logins == 1
        # One probe plus the data request itself
        data_request = fake_upstream.requests_to("GET", "/data/doc")[-1]
        assert fake_upstream.count("GET", "/data/doc") == 2
        assert data_request.headers["authorization"] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_query_params_forwarded(self, service, fake_upstream):
        """Test that query parameters reach the upstream URL."""
        fake_upstream.script("GET", "/data/results/get", Reply(json={"subsession_id": 777}))

        body = await service.fetch_json("/data/results/get", {"subsession_id": 777})

        assert body == {"subsession_id": 777}
        request = fake_upstream.requests_to("GET", "/data/results/get")[0]
        assert request.url.params["subsession_id"] == "777"

    @pytest.mark.asyncio
    async def test_session_reused_across_fetches(self, service, fake_upstream):
        """Test that consecutive fetches inside the TTL share one login."""
        fake_upstream.fallback("GET", "/data/results/get", Reply(json={"ok": True}))

        for subsession_id in (1, 2, 3):
            await service.fetch_json("/data/results/get", {"subsession_id": subsession_id})

        assert fake_upstream.logins == 1
        assert fake_upstream.count("GET", "/data/results/get") == 3

    @pytest.mark.asyncio
    async def test_empty_body_decodes_to_empty_object(self, service, fake_upstream):
        """Test that an empty 200 body is treated as no data."""
        fake_upstream.script("GET", "/data/results/get", Reply(text=""))

        assert await service.fetch_json("/data/results/get") == {}

    @pytest.mark.asyncio
    async def test_non_json_body_decodes_to_empty_object(self, service, fake_upstream):
        """Test that a non-JSON 200 body is treated as no data."""
        fake_upstream.script("GET", "/data/results/get", Reply(text="<html>maintenance</html>"))

        assert await service.fetch_json("/data/results/get") == {}

    @pytest.mark.asyncio
    async def test_list_body_returned_unchanged(self, service, fake_upstream):
        """Test that non-object payloads pass through without link detection."""
        fake_upstream.script("GET", "/data/results/get", Reply(json=[{"link": "ignored"}]))

        assert await service.fetch_json("/data/results/get") == [{"link": "ignored"}]
        assert len(fake_upstream.requests) == 3


class TestLinkFollow:
    """Tests for pointer responses."""

    @pytest.mark.asyncio
    async def test_link_body_returned_instead_of_envelope(self, service, fake_upstream):
        """Test that the body behind the link is returned, not the envelope."""
        fake_upstream.script("GET", "/data/results/get", Reply(json={"link": BLOB_URL, "expires": "2024-01-01"}))
        fake_upstream.script("GET", BLOB_URL, Reply(json={"subsession_id": 777, "session_results": []}))

        body = await service.fetch_json("/data/results/get", {"subsession_id": 777})

        assert body == {"subsession_id": 777, "session_results": []}
        assert fake_upstream.count("GET", BLOB_URL) == 1

    @pytest.mark.asyncio
    async def test_foreign_link_gets_no_credentials(self, service, fake_upstream):
        """Test that upstream cookies and bearer token are not sent to another origin."""
        fake_upstream.script("GET", "/data/results/get", Reply(json={"link": BLOB_URL}))
        fake_upstream.script("GET", BLOB_URL, Reply(json={}))

        await service.fetch_json("/data/results/get", {"subsession_id": 777})

        blob_request = fake_upstream.requests_to("GET", BLOB_URL)[0]
        assert "authorization" not in blob_request.headers
        assert "cookie" not in blob_request.headers
        assert blob_request.headers["accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_same_origin_link_gets_credentials(self, service, fake_upstream):
        """Test that a relative link is resolved against the upstream and authenticated."""
        fake_upstream.script("GET", "/data/results/lapchart", Reply(json={"link": "/blobs/lapchart/9"}))
        fake_upstream.script("GET", "/blobs/lapchart/9", Reply(json={"laps": [1, 2]}))

        body = await service.fetch_json("/data/results/lapchart", {"subsession_id": 9})

        assert body == {"laps": [1, 2]}
        link_request = fake_upstream.requests_to("GET", "/blobs/lapchart/9")[0]
        assert link_request.headers["authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_empty_link_not_followed(self, service, fake_upstream):
        """Test that a falsy link value is returned as a plain payload."""
        fake_upstream.script("GET", "/data/results/get", Reply(json={"link": "", "data": 1}))

        assert await service.fetch_json("/data/results/get") == {"link": "", "data": 1}

    @pytest.mark.asyncio
    async def test_link_failure_reported_as_link_stage(self, service, fake_upstream):
        """Test that a failing detail fetch is distinguishable from a failing index fetch."""
        fake_upstream.script("GET", "/data/results/get", Reply(json={"link": BLOB_URL}))
        fake_upstream.script("GET", BLOB_URL, Reply(403, text="<Error>AccessDenied</Error>"))

        with pytest.raises(UpstreamRequestError) as exc_info:
            await service.fetch_json("/data/results/get", {"subsession_id": 777})

        assert exc_info.value.stage == FetchStage.LINK
        assert exc_info.value.status == 403
        assert str(exc_info.value).startswith("follow https://blobs.example.net/blob/777")
        assert "AccessDenied" in exc_info.value.body_excerpt

    @pytest.mark.asyncio
    async def test_link_unauthorized_retried_once(self, service, fake_upstream):
        """Test that the link stage gets the same one re-login and retry on 401."""
        fake_upstream.script("GET", "/data/results/get", Reply(json={"link": "/blobs/1"}))
        fake_upstream.script("GET", "/blobs/1", Reply(401), Reply(json={"laps": []}))

        assert await service.fetch_json("/data/results/get") == {"laps": []}
        assert fake_upstream.logins == 2
        assert fake_upstream.count("GET", "/data/results/get") == 1
        assert fake_upstream.count("GET", "/blobs/1") == 2


class TestRetryOnUnauthorized:
    """Tests for re-login on 401."""

    @pytest.mark.asyncio
    async def test_relogin_then_success(self, service, fake_upstream):
        """Test that a 401 triggers one forced re-login and the retried body is returned."""
        fake_upstream.script("GET", "/data/results/lapchart", Reply(401), Reply(json={"laps": [{"lap": 1}]}))

        body = await service.fetch_json("/data/results/lapchart", {"subsession_id": 5})

        assert body == {"laps": [{"lap": 1}]}
        assert fake_upstream.count("GET", "/data/results/lapchart") == 2
        assert fake_upstream.logins == 2
        retried = fake_upstream.requests_to("GET", "/data/results/lapchart")[1]
        assert retried.headers["authorization"] == "Bearer token-2"

    @pytest.mark.asyncio
    async def test_second_unauthorized_not_retried(self, service, fake_upstream):
        """Test that 401 after the re-login fails with exactly two data calls and two logins."""
        fake_upstream.fallback("GET", "/data/results/lapchart", Reply(401))

        with pytest.raises(UpstreamAuthExpiredError) as exc_info:
            await service.fetch_json("/data/results/lapchart", {"subsession_id": 5})

        assert isinstance(exc_info.value, UpstreamRequestError)
        assert exc_info.value.status == 401
        assert exc_info.value.stage == FetchStage.INDEX
        assert fake_upstream.count("GET", "/data/results/lapchart") == 2
        assert fake_upstream.logins == 2

    @pytest.mark.asyncio
    async def test_session_rejected_during_relogin(self, service, fake_upstream):
        """Test that a rejected session during re-login is surfaced without a data retry."""
        await service.ensure_session()
        fake_upstream.script("GET", "/data/results/get", Reply(401))
        fake_upstream.script("GET", "/data/doc", Reply(401))

        with pytest.raises(SessionRejectedError):
            await service.fetch_json("/data/results/get")

        assert fake_upstream.count("GET", "/data/results/get") == 1
        assert fake_upstream.logins == 2

    @pytest.mark.asyncio
    async def test_concurrent_unauthorized_share_relogin(self, service, fake_upstream):
        """Test that simultaneous 401s lead to a single forced re-login."""
        await service.ensure_session()
        fake_upstream.script("GET", "/data/a", Reply(401, delay=0.02), Reply(json={"a": 1}))
        fake_upstream.script("GET", "/data/b", Reply(401, delay=0.02), Reply(json={"b": 2}))

        results = await asyncio.gather(service.fetch_json("/data/a"), service.fetch_json("/data/b"))

        assert results == [{"a": 1}, {"b": 2}]
        assert fake_upstream.logins == 2


class TestRequestErrors:
    """Tests for non-auth failures."""

    @pytest.mark.asyncio
    async def test_not_found_not_retried(self, service, fake_upstream):
        """Test that a non-401 error fails immediately with the upstream status."""
        fake_upstream.script("GET", "/data/results/get", Reply(404, json={"error": "Not found"}))

        with pytest.raises(UpstreamRequestError) as exc_info:
            await service.fetch_json("/data/results/get", {"subsession_id": 1})

        assert not isinstance(exc_info.value, UpstreamAuthExpiredError)
        assert exc_info.value.status == 404
        assert exc_info.value.stage == FetchStage.INDEX
        assert str(exc_info.value) == "GET https://members.example.com/data/results/get -> 404"
        assert fake_upstream.count("GET", "/data/results/get") == 1
        assert fake_upstream.logins == 1

    @pytest.mark.asyncio
    async def test_server_error_not_retried(self, service, fake_upstream):
        """Test that 5xx responses are not retried."""
        fake_upstream.script("GET", "/data/results/get", Reply(503, text="down"))

        with pytest.raises(UpstreamRequestError) as exc_info:
            await service.fetch_json("/data/results/get")

        assert exc_info.value.status == 503
        assert fake_upstream.count("GET", "/data/results/get") == 1

    @pytest.mark.asyncio
    async def test_body_excerpt_truncated(self, service, fake_upstream):
        """Test that long error bodies are cut down in the error."""
        fake_upstream.script("GET", "/data/results/get", Reply(500, text="x" * 5000))

        with pytest.raises(UpstreamRequestError) as exc_info:
            await service.fetch_json("/data/results/get")

        assert len(exc_info.value.body_excerpt) == 200
        assert exc_info.value.body_excerpt.endswith("...")

    @pytest.mark.asyncio
    async def test_timeout_has_no_status(self, service, fake_upstream):
        """Test that a timeout surfaces as UpstreamRequestError without a status."""
        fake_upstream.script("GET", "/data/results/get", Reply(error=httpx.ReadTimeout))

        with pytest.raises(UpstreamRequestError) as exc_info:
            await service.fetch_json("/data/results/get")

        assert exc_info.value.status is None
        assert "timed out" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_query_string_not_in_error(self, service, fake_upstream):
        """Test that signed link query strings are kept out of error messages."""
        signed = "https://blobs.example.net/blob/1?X-Amz-Signature=deadbeef"
        fake_upstream.script("GET", "/data/results/get", Reply(json={"link": signed}))
        fake_upstream.script("GET", signed, Reply(500))

        with pytest.raises(UpstreamRequestError) as exc_info:
            await service.fetch_json("/data/results/get")

        assert "deadbeef" not in str(exc_info.value)
        assert exc_info.value.url == "https://blobs.example.net/blob/1"


class TestCookieIsolation:
    """Tests that upstream cookies only travel through the credential store."""

    @pytest.mark.asyncio
    async def test_fetch_cookies_not_sent_later(self, service, fake_upstream):
        """Test that cookies set by data or link responses are not sent on later requests."""
        fake_upstream.script("GET", "/data/results/get", Reply(json={"link": BLOB_URL}, cookies=["AWSALB=lb; Path=/"]))
        fake_upstream.script("GET", BLOB_URL, Reply(json={}, cookies=["blobsess=b1; Path=/"]))

        await service.fetch_json("/data/results/get", {"subsession_id": 1})
        await service.fetch_json("/data/doc")

        assert len(service.http.cookies) == 0
        doc_request = fake_upstream.requests_to("GET", "/data/doc")[-1]
        assert doc_request.headers["cookie"] == "authtoken_members=token-1"

    @pytest.mark.asyncio
    async def test_login_redirect_unaffected_by_concurrent_fetch(self, service, fake_upstream):
        """Test that a fetch finishing in the middle of a login redirect chain leaves the login intact."""
        await service.ensure_session()
        fake_upstream.script(
            "POST",
            "/auth",
            Reply(302, cookies=["irsso=s1; Path=/"], headers=[("location", "/auth/done")]),
        )
        fake_upstream.script("GET", "/auth/done", Reply(cookies=["authtoken_members=renewed; Path=/"], delay=0.05))
        fake_upstream.script("GET", BLOB_URL, Reply(json={"blob": 1}, cookies=["blobsess=b1; Path=/"], delay=0.01))

        _, body = await asyncio.gather(service.ensure_session(force=True), service.fetch_json(BLOB_URL))

        assert body == {"blob": 1}
        assert service.store.cookies == {"irsso": "s1", "authtoken_members": "renewed"}
        assert service.store.extract_token() == "renewed"
        redirect_hop = fake_upstream.requests_to("GET", "/auth/done")[0]
        assert "blobsess" not in redirect_hop.headers.get("cookie", "")
        assert len(service.http.cookies) == 0
