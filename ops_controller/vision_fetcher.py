"""
HTTP frame fetcher for the vision detection modality.

The vision service renders a dashboard per monitored app server-side and
exposes the most recent frame as an image:

    GET {base_url}/health
    GET {base_url}/api/v1/vision/{namespace}/{app}/frame/latest

A 404 means no frame has been rendered yet. Any transport error is logged and
reported as "no frame" so the detector loop decides what counts as a failure.
"""

import logging
from typing import Optional

import httpx

from .collaborators import Frame, FrameFetcher

logger = logging.getLogger("vision_fetcher")


class HttpFrameFetcher(FrameFetcher):

    def __init__(self, base_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def is_available(self) -> bool:
        async with self._client() as client:
            try:
                response = await client.get("/health")
                return response.status_code == 200
            except httpx.HTTPError as e:
                logger.debug(f"Vision service unavailable: {e}")
                return False

    async def get_latest_frame(self, app_name: str, namespace: str) -> Optional[Frame]:
        async with self._client() as client:
            try:
                response = await client.get(f"/api/v1/vision/{namespace}/{app_name}/frame/latest")
            except httpx.HTTPError as e:
                logger.error(f"Error fetching frame for {namespace}/{app_name}: {e}")
                return None

        if response.status_code == 404:
            logger.debug(f"No frame available yet for {namespace}/{app_name}")
            return None
        if response.status_code != 200:
            logger.error(f"Frame fetch for {namespace}/{app_name} returned HTTP {response.status_code}")
            return None

        return Frame(
            data=response.content,
            mime_type=response.headers.get("content-type", "image/jpeg"),
        )
