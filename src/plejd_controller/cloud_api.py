"""Plejd cloud API client.

Logs in, resolves the configured site by title and downloads the site document
(devices, address tables, scenes and the mesh crypto key). Every successful
download is cached on disk; when the cloud is unreachable the cached copy is
used instead, and ``preferCachedApiResponse`` skips the cloud altogether.
"""

from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, cast

import aiohttp
from pydantic import ValidationError

from plejd_controller.const import PLEJD_API_APP_ID, PLEJD_API_BASE, PLEJD_API_CACHE_FILE
from plejd_controller.exceptions import CryptoKeyError, PlejdApiError
from plejd_controller.logging_abstraction import PlejdLogger, get_logger
from plejd_controller.protocol.crypto import parse_crypto_key
from plejd_controller.structs import ApiSite

__all__ = [
    "PlejdCloudAPI",
    "crypto_key_of",
]

logger = get_logger(__name__)

LOGIN_PATH = "login"
SITE_LIST_PATH = "functions/getSiteList"
SITE_DETAILS_PATH = "functions/getSiteById"

HTTP_BAD_REQUEST = 400
HTTP_FORBIDDEN = 403


def crypto_key_of(site: ApiSite) -> bytes:
    """Mesh key of a site document, raises ``CryptoKeyError`` when absent or malformed."""
    raw = site.plejd_mesh.crypto_key
    if not raw:
        msg = f"No crypto key set for site {site.site.title!r}"
        raise CryptoKeyError(msg)
    try:
        return parse_crypto_key(raw)
    except ValueError as e:
        raise CryptoKeyError(str(e)) from e


class PlejdCloudAPI:
    lp: str = "PlejdCloudAPI:"
    logger: PlejdLogger = logger
    api_timeout: int = 10

    def __init__(  # noqa: PLR0913
        self,
        site_name: str,
        username: str,
        password: str,
        cache_file: str | Path = PLEJD_API_CACHE_FILE,
        prefer_cache: bool = False,
        base_url: str = PLEJD_API_BASE,
        logger: PlejdLogger | None = None,
    ) -> None:
        if logger is not None:
            self.logger = logger
        self.site_name: str = site_name
        self.username: str = username
        self.password: str = password
        self.cache_file: Path = Path(cache_file)
        self.prefer_cache: bool = prefer_cache
        self.base_url: str = base_url if base_url.endswith("/") else f"{base_url}/"
        self.session_token: str | None = None
        self.site_id: str | None = None
        self.http_session: aiohttp.ClientSession | None = None

    async def close(self) -> None:
        lp = f"{self.lp}close:"
        if self.http_session and not self.http_session.closed:
            self.logger.debug("%s Closing aiohttp ClientSession", lp)
            await self.http_session.close()
        self.http_session = None

    def _check_session(self) -> aiohttp.ClientSession:
        if self.http_session is None or self.http_session.closed:
            self.http_session = aiohttp.ClientSession(
                base_url=self.base_url,
                timeout=aiohttp.ClientTimeout(total=self.api_timeout),
            )
        return self.http_session

    def _headers(self) -> dict[str, str]:
        headers = {
            "X-Parse-Application-Id": PLEJD_API_APP_ID,
            "Content-Type": "application/json",
        }
        if self.session_token:
            headers["X-Parse-Session-Token"] = self.session_token
        return headers

    async def _post(self, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        sesh = self._check_session()
        try:
            async with sesh.post(path, json=payload or {}, headers=self._headers()) as r:
                if r.status >= HTTP_BAD_REQUEST:
                    raise PlejdApiError(f"POST {path} failed", status=r.status)
                data = await r.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, json.JSONDecodeError) as e:
            raise PlejdApiError(f"POST {path} failed: {e}") from e
        if not isinstance(data, dict):
            raise PlejdApiError(f"POST {path} returned {type(data).__name__}, expected an object")
        return cast("dict[str, Any]", data)

    # ------------------------------------------------------------------ cloud calls

    async def login(self) -> str:
        lp = f"{self.lp}login:"
        self.logger.info("%s Logging into %s", lp, self.site_name)
        try:
            data = await self._post(LOGIN_PATH, {"username": self.username, "password": self.password})
        except PlejdApiError as e:
            if e.status == HTTP_BAD_REQUEST:
                self.logger.error("%s Server returned 400, probably invalid credentials", lp)
            elif e.status == HTTP_FORBIDDEN:
                self.logger.error("%s Server returned 403, Plejd sometimes does this; waiting may help", lp)
            raise
        token = data.get("sessionToken")
        if not token:
            msg = "no session token received"
            raise PlejdApiError(msg)
        self.session_token = str(token)
        return self.session_token

    async def get_sites(self) -> list[dict[str, Any]]:
        lp = f"{self.lp}get_sites:"
        data = await self._post(SITE_LIST_PATH)
        sites = cast("list[dict[str, Any]]", data.get("result") or [])
        self.logger.info(
            "%s %d site(s) on account",
            lp,
            len(sites),
            extra={"sites": [s.get("site", {}).get("title") for s in sites]},
        )
        return sites

    async def resolve_site_id(self) -> str:
        lp = f"{self.lp}resolve_site:"
        for entry in await self.get_sites():
            site = entry.get("site") or {}
            if site.get("title") == self.site_name:
                self.site_id = str(site["siteId"])
                self.logger.info("%s Site %r found", lp, self.site_name)
                return self.site_id
        msg = f"no site named {self.site_name!r}"
        raise PlejdApiError(msg)

    async def get_site(self, site_id: str) -> dict[str, Any]:
        lp = f"{self.lp}get_site:"
        data = await self._post(SITE_DETAILS_PATH, {"siteId": site_id})
        results = data.get("result") or []
        if not results:
            msg = f"no site with id {site_id}"
            raise PlejdApiError(msg)
        self.logger.info("%s Site details for %s received", lp, site_id)
        return cast("dict[str, Any]", results[0])

    # ------------------------------------------------------------------ cache

    def read_cache(self) -> dict[str, Any] | None:
        lp = f"{self.lp}read_cache:"
        try:
            with self.cache_file.open() as f:
                cached = json.load(f)
        except FileNotFoundError:
            self.logger.debug("%s No cached API response at %s", lp, self.cache_file)
            return None
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning("%s Unreadable cache %s: %s", lp, self.cache_file, e)
            return None
        details = cached.get("siteDetails") if isinstance(cached, dict) else None
        if not isinstance(details, dict):
            self.logger.warning("%s Cache %s has no site details", lp, self.cache_file)
            return None
        self.logger.info("%s Using cached API response", lp, extra={"cached_at": cached.get("dtCache")})
        return cast("dict[str, Any]", details)

    def write_cache(self, site_details: dict[str, Any]) -> None:
        lp = f"{self.lp}write_cache:"
        payload = {
            "siteId": self.site_id,
            "siteDetails": site_details,
            "dtCache": datetime.datetime.now(datetime.UTC).isoformat(),
        }
        try:
            self.cache_file.parent.mkdir(parents=True, exist_ok=True)
            with self.cache_file.open("w") as f:
                json.dump(payload, f)
        except OSError as e:
            self.logger.warning("%s Could not write %s: %s", lp, self.cache_file, e)
        else:
            self.logger.debug("%s Cached API response to %s", lp, self.cache_file)

    # ------------------------------------------------------------------ entry point

    async def fetch_site(self) -> ApiSite:
        """Site document from the cache or the cloud, following the cache preference.

        Raises:
            PlejdApiError: cloud failed and no usable cache exists

        """
        lp = f"{self.lp}fetch_site:"
        details: dict[str, Any] | None = None
        if self.prefer_cache:
            details = self.read_cache()

        if details is None:
            try:
                await self.login()
                site_id = await self.resolve_site_id()
                details = await self.get_site(site_id)
            except PlejdApiError as e:
                self.logger.warning("%s Cloud request failed (%s), trying cache", lp, e)
                details = self.read_cache()
                if details is None:
                    raise
            else:
                self.write_cache(details)
            finally:
                await self.close()

        try:
            return ApiSite.model_validate(details)
        except ValidationError as e:
            msg = f"site document could not be parsed: {e.error_count()} error(s)"
            raise PlejdApiError(msg) from e
