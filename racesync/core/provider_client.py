"""
provider_client.py — HTTP client for the timing provider's data API.

Every call is a form-encoded POST of {pc, rid, token, page?, eid?} to one
of the kind-specific paths; the response is JSON of varying envelope
shape. Transport failures and timeouts surface as UpstreamError. Non-2xx
and invalid JSON are returned to the caller, which decides what they mean
for the run.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from racesync.core.config import settings
from racesync.core.errors import UpstreamError
from racesync.core.provider_fields import mask_token

logger = logging.getLogger("racesync.provider")


def kind_path(kind: str) -> str:
    paths = {
        "info": settings.PROVIDER_INFO_PATH,
        "bio": settings.PROVIDER_BIO_PATH,
        "score": settings.PROVIDER_SCORE_PATH,
        "split": settings.PROVIDER_SPLIT_PATH,
        "passed_time": settings.PROVIDER_PASSED_TIME_PATH,
    }
    if kind not in paths:
        raise ValueError(f"Unknown provider request kind: {kind}")
    return paths[kind]


@dataclass
class ProviderResponse:
    endpoint: str
    request_params: dict
    status_code: int
    content_type: Optional[str]
    raw_body: str
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_json_object(self) -> bool:
        return isinstance(self.body, (dict, list))


class ProviderClient:
    """Thin async wrapper over httpx for provider requests.

    A client passed in (e.g. one built on httpx.MockTransport) is used as-is
    and not closed by this class.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None,
                 timeout: Optional[float] = None):
        self._timeout = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_S
        self._owns_client = client is None
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if settings.PROVIDER_USER_AGENT:
                headers["User-Agent"] = settings.PROVIDER_USER_AGENT
            self._client = httpx.AsyncClient(timeout=self._timeout, headers=headers)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def request(self, campaign: Mapping, kind: str, page: int = 1,
                      eid: Optional[int] = None) -> ProviderResponse:
        """POST one provider request for a campaign."""
        race_id = str(campaign["race_id"] or "").strip()
        token = str(campaign["token"] or "").strip()
        base_url = str(campaign["base_url"] or "").strip() or settings.PROVIDER_BASE_URL
        partner_code = (str(campaign["partner_code"] or "").strip()
                        or settings.PROVIDER_PARTNER_CODE)
        endpoint = f"{base_url.rstrip('/')}{kind_path(kind)}"

        form = {"pc": partner_code, "rid": race_id, "token": token}
        if kind != "info":
            form["page"] = str(page)
        if eid is not None:
            form["eid"] = str(eid)

        request_params = {k: v for k, v in form.items() if k != "token"}
        request_params["token"] = mask_token(token)

        try:
            resp = await self._get_client().post(endpoint, data=form, timeout=self._timeout)
        except httpx.TimeoutException as e:
            logger.warning("Provider %s timeout (%s): %s", kind, endpoint, e)
            raise UpstreamError("Provider request timeout") from e
        except httpx.HTTPError as e:
            logger.warning("Provider %s request failed (%s): %s", kind, endpoint, e)
            raise UpstreamError(f"Provider request failed: {e}") from e

        raw = resp.text
        try:
            body = json.loads(raw)
        except ValueError:
            body = None

        logger.debug("Provider %s page=%s eid=%s -> HTTP %d (%d chars)",
                     kind, page, eid, resp.status_code, len(raw))
        return ProviderResponse(
            endpoint=endpoint,
            request_params=request_params,
            status_code=resp.status_code,
            content_type=resp.headers.get("content-type"),
            raw_body=raw,
            body=body,
        )
