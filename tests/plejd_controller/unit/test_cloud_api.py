"""Unit tests for the Plejd cloud API client and its on-disk cache."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from plejd_controller.cloud_api import (
    LOGIN_PATH,
    SITE_DETAILS_PATH,
    SITE_LIST_PATH,
    PlejdCloudAPI,
    crypto_key_of,
)
from plejd_controller.exceptions import CryptoKeyError, PlejdApiError
from plejd_controller.structs import ApiSite
from tests.helpers.sample_site import CRYPTO_KEY, JSONDict


def cloud_responses(site_document: JSONDict) -> dict[str, dict[str, Any]]:
    return {
        LOGIN_PATH: {"sessionToken": "token-1"},
        SITE_LIST_PATH: {
            "result": [
                {"site": {"siteId": "site-0", "title": "Cabin"}},
                {"site": {"siteId": "site-1", "title": "Home"}},
            ],
        },
        SITE_DETAILS_PATH: {"result": [site_document]},
    }


def fake_post(responses: dict[str, dict[str, Any]]) -> AsyncMock:
    async def _post(path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        return responses[path]

    return AsyncMock(side_effect=_post)


@pytest.fixture
def api(tmp_path: Path) -> PlejdCloudAPI:
    return PlejdCloudAPI("Home", "user@example.com", "secret", cache_file=tmp_path / "cache" / "api.json")


class TestFetchSite:
    """Tests for PlejdCloudAPI.fetch_site()."""

    @pytest.mark.asyncio
    async def test_cloud_success_writes_cache(self, api: PlejdCloudAPI, site_document: JSONDict):
        post = fake_post(cloud_responses(site_document))
        with patch.object(api, "_post", post):
            site = await api.fetch_site()

        assert site.site.title == "Home"
        assert api.session_token == "token-1"
        assert api.site_id == "site-1"
        post.assert_any_await(SITE_DETAILS_PATH, {"siteId": "site-1"})
        cached = json.loads(api.cache_file.read_text())
        assert cached["siteId"] == "site-1"
        assert cached["siteDetails"] == site_document
        assert "dtCache" in cached

    @pytest.mark.asyncio
    async def test_cloud_failure_falls_back_to_cache(self, api: PlejdCloudAPI, site_document: JSONDict):
        api.site_id = "site-1"
        api.write_cache(site_document)

        with patch.object(api, "_post", AsyncMock(side_effect=PlejdApiError("POST login failed", status=503))):
            site = await api.fetch_site()

        assert crypto_key_of(site) == CRYPTO_KEY

    @pytest.mark.asyncio
    async def test_cloud_failure_without_cache_raises(self, api: PlejdCloudAPI):
        with (
            patch.object(api, "_post", AsyncMock(side_effect=PlejdApiError("POST login failed", status=400))),
            pytest.raises(PlejdApiError) as exc_info,
        ):
            _ = await api.fetch_site()

        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_prefer_cache_skips_cloud(self, api: PlejdCloudAPI, site_document: JSONDict):
        api.write_cache(site_document)
        api.prefer_cache = True
        post = AsyncMock()

        with patch.object(api, "_post", post):
            site = await api.fetch_site()

        post.assert_not_awaited()
        assert site.site.site_id == "site-1"

    @pytest.mark.asyncio
    async def test_prefer_cache_without_cache_uses_cloud(self, api: PlejdCloudAPI, site_document: JSONDict):
        api.prefer_cache = True
        post = fake_post(cloud_responses(site_document))

        with patch.object(api, "_post", post):
            _ = await api.fetch_site()

        assert post.await_count == 3

    @pytest.mark.asyncio
    async def test_unknown_site_title(self, api: PlejdCloudAPI, site_document: JSONDict):
        api.site_name = "Summer house"

        with patch.object(api, "_post", fake_post(cloud_responses(site_document))), pytest.raises(PlejdApiError):
            _ = await api.fetch_site()

    @pytest.mark.asyncio
    async def test_login_without_token(self, api: PlejdCloudAPI, site_document: JSONDict):
        responses = cloud_responses(site_document)
        responses[LOGIN_PATH] = {}

        with patch.object(api, "_post", fake_post(responses)), pytest.raises(PlejdApiError, match="session token"):
            _ = await api.login()

    @pytest.mark.asyncio
    async def test_unparseable_site_document(self, api: PlejdCloudAPI, site_document: JSONDict):
        responses = cloud_responses(site_document)
        responses[SITE_DETAILS_PATH] = {"result": [{"devices": "not a list"}]}

        with patch.object(api, "_post", fake_post(responses)), pytest.raises(PlejdApiError, match="parsed"):
            _ = await api.fetch_site()


class TestCache:
    def test_missing_cache(self, api: PlejdCloudAPI):
        assert api.read_cache() is None

    def test_corrupt_cache(self, api: PlejdCloudAPI):
        api.cache_file.parent.mkdir(parents=True)
        _ = api.cache_file.write_text("{")

        assert api.read_cache() is None

    def test_cache_without_details(self, api: PlejdCloudAPI):
        api.cache_file.parent.mkdir(parents=True)
        _ = api.cache_file.write_text(json.dumps({"siteId": "site-1"}))

        assert api.read_cache() is None


class TestHeaders:
    def test_session_token_header_after_login(self, api: PlejdCloudAPI):
        assert "X-Parse-Session-Token" not in api._headers()

        api.session_token = "token-1"

        headers = api._headers()
        assert headers["X-Parse-Session-Token"] == "token-1"
        assert headers["X-Parse-Application-Id"]


class TestCryptoKeyOf:
    def test_missing_key(self, site_document: JSONDict):
        site_document["plejdMesh"] = {}

        with pytest.raises(CryptoKeyError):
            _ = crypto_key_of(ApiSite.model_validate(site_document))

    def test_malformed_key(self, site_document: JSONDict):
        site_document["plejdMesh"] = {"cryptoKey": "abcd"}

        with pytest.raises(CryptoKeyError):
            _ = crypto_key_of(ApiSite.model_validate(site_document))
