"""End-to-end tests of the HTTP surface, run in-process."""

import base64
import json
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from pytest_httpx import HTTPXMock

from qwenproxy.api.app import create_app
from qwenproxy.config.settings import Settings
from qwenproxy.credentials import CredentialKind, CredentialPoolManager, mask_secret

from tests.fixtures.upstream_api import (
    CHAT_URL,
    COOKIE,
    FILE_URL,
    MODELS_URL,
    OBJECT_URL,
    OTHER_TOKEN,
    STS_URL,
    TOKEN,
    sse_record,
    sts_payload,
)


pytestmark = pytest.mark.integration

CHAT_BODY = {
    "model": "qwen-max-thinking",
    "messages": [{"role": "user", "content": "What is 6 x 7?"}],
    "stream": True,
}


@pytest.fixture
def settings(make_settings: Callable[..., Settings]) -> Settings:
    return make_settings(ssxmod_itna=COOKIE)


@asynccontextmanager
async def serve(settings: Settings) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(settings)
    async with (
        app.router.lifespan_context(app),
        httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://testserver"
        ) as client,
    ):
        yield client


def pool_of(app: FastAPI) -> CredentialPoolManager:
    return app.state.pool  # type: ignore[no-any-return]


def sse_contents(body: bytes) -> str:
    content = []
    for event in body.split(b"\n\n"):
        if not event or event == b"data: [DONE]":
            continue
        chunk = json.loads(event[len(b"data: ") :])
        content.append(chunk["choices"][0]["delta"]["content"])
    return "".join(content)


class TestChatCompletions:
    async def test_streaming_completion(
        self,
        client: httpx.AsyncClient,
        httpx_mock: HTTPXMock,
        thinking_stream: bytes,
    ) -> None:
        httpx_mock.add_response(method="POST", url=CHAT_URL, content=thinking_stream)

        response = await client.post("/v1/chat/completions", json=CHAT_BODY)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.content.endswith(b"data: [DONE]\n\n")
        assert response.content.count(b"data: [DONE]") == 1
        assert sse_contents(response.content) == (
            "<think>\nLet me reason.\n</think>\nThe answer is 42."
        )

    async def test_upstream_request_shape(
        self,
        client: httpx.AsyncClient,
        httpx_mock: HTTPXMock,
        thinking_stream: bytes,
    ) -> None:
        httpx_mock.add_response(method="POST", url=CHAT_URL, content=thinking_stream)

        await client.post("/v1/chat/completions", json=CHAT_BODY)

        upstream = httpx_mock.get_request(method="POST", url=CHAT_URL)
        assert upstream is not None
        assert upstream.headers["Authorization"] == f"Bearer {TOKEN}"
        assert upstream.headers["Cookie"] == f"ssxmod_itna={COOKIE}"
        body = json.loads(upstream.content)
        assert body["model"] == "qwen-max"
        assert body["chat_type"] == "t2t"
        assert body["feature_config"]["thinking_enabled"] is True
        assert body["messages"] == CHAT_BODY["messages"]

    async def test_non_streaming_completion(
        self,
        client: httpx.AsyncClient,
        httpx_mock: HTTPXMock,
        thinking_stream: bytes,
    ) -> None:
        httpx_mock.add_response(method="POST", url=CHAT_URL, content=thinking_stream)

        response = await client.post(
            "/v1/chat/completions", json={**CHAT_BODY, "stream": False}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["object"] == "chat.completion"
        assert data["choices"][0]["message"]["content"] == (
            "<think>\nLet me reason.\n</think>\nThe answer is 42."
        )
        assert data["choices"][0]["finish_reason"] == "stop"

    async def test_inline_image_uploaded_before_chat(
        self,
        client: httpx.AsyncClient,
        httpx_mock: HTTPXMock,
    ) -> None:
        httpx_mock.add_response(method="POST", url=STS_URL, json=sts_payload())
        httpx_mock.add_response(method="PUT", url=OBJECT_URL, status_code=200)
        httpx_mock.add_response(
            method="POST", url=CHAT_URL, content=sse_record("A cat.", phase="answer")
        )
        image = "data:image/png;base64," + base64.b64encode(b"png-bytes").decode()

        response = await client.post(
            "/v1/chat/completions",
            json={
                "model": "qwen-vl-max",
                "stream": True,
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "Describe"},
                            {"type": "image_url", "image_url": {"url": image}},
                        ],
                    }
                ],
            },
        )

        assert response.status_code == 200
        upstream = httpx_mock.get_request(method="POST", url=CHAT_URL)
        assert upstream is not None
        assert json.loads(upstream.content)["messages"][0]["content"] == [
            {"type": "text", "text": "Describe"},
            {"type": "image", "image": FILE_URL},
        ]

    async def test_upstream_client_error_invalidates_credentials(
        self,
        app: FastAPI,
        client: httpx.AsyncClient,
        httpx_mock: HTTPXMock,
    ) -> None:
        httpx_mock.add_response(
            method="POST", url=CHAT_URL, status_code=401, json={"detail": "expired"}
        )

        response = await client.post("/v1/chat/completions", json=CHAT_BODY)

        assert response.status_code == 401
        assert response.json() == {"detail": "expired"}

        pool = pool_of(app)
        [token] = await pool.snapshot(CredentialKind.API_KEY)
        [cookie] = await pool.snapshot(CredentialKind.SSXMOD_ITNA)
        assert (token.valid, token.error_count) == (False, 1)
        assert (cookie.valid, cookie.error_count) == (False, 1)

        retry = await client.post("/v1/chat/completions", json=CHAT_BODY)
        assert retry.status_code == 503
        assert retry.json()["error"]["type"] == "service_unavailable_error"

    async def test_next_request_uses_other_token_after_invalidation(
        self,
        make_settings: Callable[..., Settings],
        httpx_mock: HTTPXMock,
        thinking_stream: bytes,
    ) -> None:
        httpx_mock.add_response(method="POST", url=CHAT_URL, status_code=403, text="no")
        httpx_mock.add_response(method="POST", url=CHAT_URL, content=thinking_stream)

        async with serve(make_settings(api_keys=f"{TOKEN},{OTHER_TOKEN}")) as client:
            first = await client.post("/v1/chat/completions", json=CHAT_BODY)
            second = await client.post("/v1/chat/completions", json=CHAT_BODY)

        assert first.status_code == 403
        assert first.text == "no"
        assert second.status_code == 200
        used = [
            r.headers["Authorization"]
            for r in httpx_mock.get_requests(method="POST", url=CHAT_URL)
        ]
        assert used == [f"Bearer {TOKEN}", f"Bearer {OTHER_TOKEN}"]

    async def test_upstream_server_error_keeps_credentials(
        self,
        app: FastAPI,
        client: httpx.AsyncClient,
        httpx_mock: HTTPXMock,
    ) -> None:
        httpx_mock.add_response(method="POST", url=CHAT_URL, status_code=500)

        response = await client.post("/v1/chat/completions", json=CHAT_BODY)

        assert response.status_code == 502
        assert response.json()["error"]["type"] == "upstream_connection_error"
        [token] = await pool_of(app).snapshot(CredentialKind.API_KEY)
        assert token.valid is True

    async def test_transport_failure_is_bad_gateway(
        self,
        app: FastAPI,
        client: httpx.AsyncClient,
        httpx_mock: HTTPXMock,
    ) -> None:
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=CHAT_URL)

        response = await client.post("/v1/chat/completions", json=CHAT_BODY)

        assert response.status_code == 502
        [token] = await pool_of(app).snapshot(CredentialKind.API_KEY)
        assert token.error_count == 0

    async def test_no_token_is_service_unavailable(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        async with serve(make_settings(api_keys="")) as client:
            response = await client.post("/v1/chat/completions", json=CHAT_BODY)

        assert response.status_code == 503
        assert response.json()["error"]["message"] == (
            "No valid upstream API key available"
        )

    async def test_empty_messages_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/v1/chat/completions", json={"model": "qwen-max", "messages": []}
        )

        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"

    @pytest.mark.parametrize(
        "part",
        [
            {"type": "text", "text": 123},
            {"type": "image_url", "image_url": "not-an-object"},
            {"type": "image_url"},
        ],
        ids=["text-not-string", "image-url-not-object", "image-url-missing"],
    )
    async def test_malformed_known_part_rejected(
        self, app: FastAPI, client: httpx.AsyncClient, part: dict[str, Any]
    ) -> None:
        body = {
            "model": "qwen-max",
            "messages": [{"role": "user", "content": [part]}],
        }

        response = await client.post("/v1/chat/completions", json=body)

        assert response.status_code == 400
        assert response.json()["error"]["type"] == "invalid_request_error"
        [token] = await pool_of(app).snapshot(CredentialKind.API_KEY)
        assert token.last_used_at is None


class TestModels:
    async def test_variants_are_derived(
        self, client: httpx.AsyncClient, httpx_mock: HTTPXMock
    ) -> None:
        catalog: dict[str, Any] = {
            "data": [
                {
                    "id": "qwen-max",
                    "object": "model",
                    "info": {
                        "meta": {
                            "abilities": {"thinking": True},
                            "chat_type": ["t2t", "search", "t2i"],
                        }
                    },
                },
                {"id": "qwen-turbo", "info": {"meta": {"chat_type": ["t2t"]}}},
            ]
        }
        httpx_mock.add_response(method="GET", url=MODELS_URL, json=catalog)

        response = await client.get("/v1/models")

        assert response.status_code == 200
        data = response.json()
        assert data["object"] == "list"
        assert [m["id"] for m in data["data"]] == [
            "qwen-max",
            "qwen-max-thinking",
            "qwen-max-search",
            "qwen-max-image",
            "qwen-turbo",
        ]

    async def test_upstream_failure_is_bad_gateway(
        self, app: FastAPI, client: httpx.AsyncClient, httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(method="GET", url=MODELS_URL, status_code=401)

        response = await client.get("/v1/models")

        assert response.status_code == 502
        [token] = await pool_of(app).snapshot(CredentialKind.API_KEY)
        assert token.valid is True

    async def test_no_token_is_service_unavailable(
        self, make_settings: Callable[..., Settings]
    ) -> None:
        async with serve(make_settings(api_keys="")) as client:
            response = await client.get("/v1/models")

        assert response.status_code == 503


class TestAdmin:
    async def test_import_and_list(self, client: httpx.AsyncClient) -> None:
        new_token = "sk-imported-token-000000000001"
        response = await client.post(
            "/admin/credentials/import",
            json={"cookies": [f"token={new_token}; ssxmod_itna=fresh-cookie-0001"]},
        )

        assert response.status_code == 200
        assert response.json() == {"added": {"api_key": 1, "ssxmod_itna": 1}}

        listing = (await client.get("/admin/credentials")).json()
        assert listing["api_key"]["valid"] == 2
        assert listing["ssxmod_itna"]["valid"] == 2
        masked = [c["masked_value"] for c in listing["api_key"]["credentials"]]
        assert masked == [mask_secret(TOKEN), mask_secret(new_token)]
        assert new_token not in json.dumps(listing)

    async def test_purge_and_delete(
        self, app: FastAPI, client: httpx.AsyncClient
    ) -> None:
        pool = pool_of(app)
        await pool.insert(CredentialKind.API_KEY, OTHER_TOKEN)
        await pool.invalidate(CredentialKind.API_KEY, OTHER_TOKEN)
        await pool.invalidate(CredentialKind.SSXMOD_ITNA, COOKIE)

        missing = await client.delete(
            f"/admin/credentials/api_key/{mask_secret(TOKEN)}"
        )
        assert missing.status_code == 404

        deleted = await client.delete(
            f"/admin/credentials/api_key/{mask_secret(OTHER_TOKEN)}"
        )
        assert deleted.status_code == 204

        purged = await client.post("/admin/credentials/purge")
        assert purged.json() == {"removed": {"api_key": 0, "ssxmod_itna": 1}}

    async def test_unknown_kind_rejected(self, client: httpx.AsyncClient) -> None:
        response = await client.delete("/admin/credentials/password/abcd")

        assert response.status_code == 400


class TestAuthAndHealth:
    async def test_banner_and_health(self, client: httpx.AsyncClient) -> None:
        banner = await client.get("/")
        assert banner.status_code == 200
        assert banner.json()["endpoints"]["chat"] == "/v1/chat/completions"

        health = (await client.get("/health")).json()
        assert health["status"] == "pass"
        assert health["pools"]["api_key"] == {"valid": 1, "invalid": 0}
        assert health["pools"]["ssxmod_itna"] == {"valid": 1, "invalid": 0}

    async def test_request_id_echoed(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health", headers={"x-request-id": "req-123"})

        assert response.headers["x-request-id"] == "req-123"

    async def test_client_token_required_when_configured(
        self, make_settings: Callable[..., Settings], httpx_mock: HTTPXMock
    ) -> None:
        httpx_mock.add_response(method="GET", url=MODELS_URL, json={"data": []})

        async with serve(make_settings(auth_token="proxy-secret")) as client:
            assert (await client.get("/")).status_code == 200
            assert (await client.get("/health")).status_code == 200

            missing = await client.get("/v1/models")
            wrong = await client.get(
                "/v1/models", headers={"Authorization": "Bearer nope"}
            )
            admin = await client.get("/admin/credentials")
            ok = await client.get(
                "/v1/models", headers={"Authorization": "Bearer proxy-secret"}
            )

        assert missing.status_code == 401
        assert missing.json()["error"]["type"] == "authentication_error"
        assert wrong.status_code == 401
        assert admin.status_code == 401
        assert ok.status_code == 200
        assert ok.json() == {"object": "list", "data": []}
