"""Shared httpx plumbing for HTTP-based upstream sources."""

from __future__ import annotations

import json
import logging
import xml.etree.ElementTree as ET
from typing import Any

import httpx

from inverter_gateway.config.schema import HttpSourceConfig
from inverter_gateway.errors import UpstreamMalformed, UpstreamUnavailable
from inverter_gateway.sources.base import UpstreamSource

logger = logging.getLogger(__name__)

# Markers of a bot-protection interstitial served instead of JSON
_CHALLENGE_MARKERS = ("challenge-platform", "cf-browser-verification")


class HttpSource(UpstreamSource):
    """UpstreamSource backed by a single ``httpx.AsyncClient``.

    Translates transport failures into ``UpstreamUnavailable`` and
    undecodable bodies into ``UpstreamMalformed``.
    """

    session_cookie_name: str = "SESSION"

    def __init__(self, config: HttpSourceConfig, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        cookies = {}
        if config.session_cookie:
            name = getattr(config, "session_cookie_name", self.session_cookie_name)
            cookies[name] = config.session_cookie
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            headers={
                "User-Agent": config.user_agent,
                "Accept": "application/json, text/plain, */*",
            },
            cookies=cookies,
            follow_redirects=True,
        )

    async def _request(
        self,
        method: str,
        path: str,
        absent_statuses: tuple[int, ...] = (404,),
        **kwargs: Any,
    ) -> httpx.Response | None:
        """Issue a request; None when the status means "no data"."""
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(self.source_id, f"timeout on {path}") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(self.source_id, f"{type(e).__name__} on {path}") from e

        if resp.status_code in absent_statuses:
            logger.debug("%s %s → %d (no data)", self.source_id, path, resp.status_code)
            return None
        if resp.status_code >= 400:
            raise UpstreamUnavailable(self.source_id, f"HTTP {resp.status_code} on {path}")
        return resp

    def _decode(self, resp: httpx.Response) -> Any:
        """Decode a JSON (or XML) body."""
        text = resp.text
        if any(marker in text for marker in _CHALLENGE_MARKERS):
            raise UpstreamMalformed(self.source_id, "bot-protection challenge page")

        content_type = resp.headers.get("content-type", "")
        stripped = text.lstrip()
        if "xml" in content_type or stripped.startswith("<?xml"):
            try:
                return xml_to_dict(ET.fromstring(stripped))
            except ET.ParseError as e:
                raise UpstreamMalformed(self.source_id, f"invalid XML: {e}") from e
        try:
            return json.loads(text)
        except ValueError as e:
            raise UpstreamMalformed(self.source_id, "invalid JSON") from e

    async def _get_json(self, path: str, **kwargs: Any) -> Any:
        resp = await self._request("GET", path, **kwargs)
        return None if resp is None else self._decode(resp)

    async def _post_json(self, path: str, **kwargs: Any) -> Any:
        resp = await self._request("POST", path, **kwargs)
        return None if resp is None else self._decode(resp)

    async def close(self) -> None:
        await self._client.aclose()


def xml_to_dict(element: ET.Element) -> Any:
    """Convert an XML element tree to plain dicts/lists/strings.

    Repeated child tags become lists; leaf text is returned as-is.
    """
    children = list(element)
    if not children:
        return (element.text or "").strip()
    result: dict[str, Any] = {}
    for child in children:
        value = xml_to_dict(child)
        if child.tag in result:
            existing = result[child.tag]
            if not isinstance(existing, list):
                result[child.tag] = [existing]
            result[child.tag].append(value)
        else:
            result[child.tag] = value
    return result


def require_mapping(source_id: str, payload: Any, what: str) -> dict:
    if not isinstance(payload, dict):
        raise UpstreamMalformed(source_id, f"{what} is not an object")
    return payload
