"""HTTP clients for the per-photo video converter and the map flythrough renderer."""

from __future__ import annotations

import logging

import httpx

from .errors import UpstreamError

logger = logging.getLogger(__name__)


class _JsonService:
    name = "upstream"

    def __init__(self, base_url: str, *, token: str | None = None, timeout: float = 300.0, client: httpx.Client | None = None):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        if client is None and base_url:
            client = httpx.Client(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout)
        self._client = client

    def _post(self, path: str, payload: dict) -> dict:
        if self._client is None:
            raise UpstreamError(f"{self.name} URL is not configured")
        try:
            response = self._client.post(path, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                f"{self.name} returned {exc.response.status_code}: {exc.response.text[:300]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamError(f"{self.name} request failed: {exc}") from exc
        if not isinstance(data, dict) or not data.get("video_url"):
            raise UpstreamError(f"{self.name} response has no video_url")
        return data

    def close(self) -> None:
        if self._client is not None:
            self._client.close()


class HttpVideoConverter(_JsonService):
    """Turns one still image into a short generated clip."""

    name = "video converter"

    def convert(self, image_url: str, index: int, job_id) -> str:
        data = self._post("/convert", {"image_url": image_url, "index": index, "job_id": str(job_id)})
        logger.debug("[%s] Converted photo %d -> %s", job_id, index, data["video_url"])
        return data["video_url"]


class HttpMapRenderer(_JsonService):
    """Renders a zoom-in flythrough for a location."""

    name = "map renderer"

    def render(self, coordinates: dict, job_id) -> str:
        payload = {"lat": float(coordinates["lat"]), "lng": float(coordinates["lng"]), "job_id": str(job_id)}
        data = self._post("/render", payload)
        logger.info("[%s] Map clip rendered -> %s", job_id, data["video_url"])
        return data["video_url"]
