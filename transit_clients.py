"""Async clients for the TDX Metro API and the Taipei Metro SOAP open-data service."""
from __future__ import annotations

import json
import os
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

import httpx

from feed_normalizers import FeedFailure, FeedFetch, is_error_page


TDX_TOKEN_URL = "https://tdx.transportdata.tw/auth/realms/TDXConnect/protocol/openid-connect/token"
TDX_BASE_URL = "https://tdx.transportdata.tw/api/basic"
TDX_OPERATOR = "TRTC"

METRO_BASE_URL = "https://api.metro.taipei/metroapi"
SOAP_NAMESPACE = "http://tempuri.org/"

AUTH_STATUSES = {401, 403}
RATE_LIMIT_STATUS = 429


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    text = value.strip()
    try:
        return max(float(text), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


def _response_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _failed_status(response: httpx.Response, source: str) -> FeedFetch:
    """Map a non-2xx response onto a FeedFetch."""
    if response.status_code in AUTH_STATUSES:
        return FeedFetch(failure=FeedFailure.UNAUTHORIZED, detail=f"{source} HTTP {response.status_code}")
    if response.status_code == RATE_LIMIT_STATUS:
        return FeedFetch(
            failure=FeedFailure.RATE_LIMITED,
            retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
            detail=f"{source} HTTP 429",
        )
    if is_error_page(response.text):
        # Let the normalizer classify and log the page
        return FeedFetch(payload=response.text)
    return FeedFetch(failure=FeedFailure.TRANSPORT, detail=f"{source} HTTP {response.status_code}")


class TDXClient:
    """OAuth client-credentials client for the TDX Metro endpoints."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        token_url: str = TDX_TOKEN_URL,
        base_url: str = TDX_BASE_URL,
        operator: str = TDX_OPERATOR,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._base_url = base_url.rstrip("/")
        self._operator = operator
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[str] = None

    @classmethod
    def from_env(cls) -> "TDXClient":
        """Build a ``TDXClient`` from ``TDX_CLIENT_ID`` / ``TDX_CLIENT_SECRET``.

        ``TDX_TOKEN_URL`` and ``TDX_BASE_URL`` optionally override the endpoints.
        """
        client_id = (os.getenv("TDX_CLIENT_ID") or "").strip()
        client_secret = (os.getenv("TDX_CLIENT_SECRET") or "").strip()

        missing: List[str] = []
        if not client_id:
            missing.append("TDX_CLIENT_ID")
        if not client_secret:
            missing.append("TDX_CLIENT_SECRET")
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            client_id=client_id,
            client_secret=client_secret,
            token_url=(os.getenv("TDX_TOKEN_URL") or TDX_TOKEN_URL).strip(),
            base_url=(os.getenv("TDX_BASE_URL") or TDX_BASE_URL).strip(),
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._token = None

    async def _login(self, force: bool = False) -> None:
        if not force and self._token:
            return

        self._token = None
        client = await self._ensure_client()
        response = await client.post(
            self._token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        response.raise_for_status()
        token = response.json().get("access_token")
        if not token:
            raise RuntimeError("Token request succeeded but access_token not found")
        self._token = token
        print("[tdx] obtained access token")

    async def _get(self, path: str, params: Dict[str, str]) -> FeedFetch:
        url = f"{self._base_url}{path}"
        try:
            await self._login()
            client = await self._ensure_client()
            headers = {"Authorization": f"Bearer {self._token}", "Accept": "application/json"}
            response = await client.get(url, params=params, headers=headers)

            if response.status_code in AUTH_STATUSES:
                print(f"[tdx] token rejected ({response.status_code}), refreshing")
                await self._login(force=True)
                headers["Authorization"] = f"Bearer {self._token}"
                response = await client.get(url, params=params, headers=headers)
                if response.status_code in AUTH_STATUSES:
                    self._token = None
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in AUTH_STATUSES or status == 400:
                print(f"[tdx] token request rejected: HTTP {status}")
                return FeedFetch(failure=FeedFailure.UNAUTHORIZED, detail=f"token HTTP {status}")
            return _failed_status(exc.response, "token")
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            print(f"[tdx] request to {path} failed: {exc}")
            return FeedFetch(failure=FeedFailure.TRANSPORT, detail=str(exc))

        if response.status_code >= 400:
            return _failed_status(response, path)
        return FeedFetch(payload=_response_payload(response))

    @staticmethod
    def _line_params(line_id: Optional[str]) -> Dict[str, str]:
        params = {"$format": "JSON"}
        if line_id:
            params["$filter"] = f"LineID eq '{line_id}'"
        return params

    async def live_board(self, line_id: Optional[str] = None) -> FeedFetch:
        """Live countdowns; TDX reports EstimateTime in whole minutes."""
        return await self._get(f"/v2/Rail/Metro/LiveBoard/{self._operator}", self._line_params(line_id))

    async def station_timetable(self, line_id: Optional[str] = None) -> FeedFetch:
        return await self._get(f"/v2/Rail/Metro/StationTimeTable/{self._operator}", self._line_params(line_id))


def build_soap_envelope(operation: str, user: str, passwd: str) -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<soap:Envelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" '
        'xmlns:xsd="http://www.w3.org/2001/XMLSchema" '
        'xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soap:Body>"
        f'<{operation} xmlns="{SOAP_NAMESPACE}">'
        f"<userName>{escape(user)}</userName>"
        f"<passWord>{escape(passwd)}</passWord>"
        f"</{operation}>"
        "</soap:Body>"
        "</soap:Envelope>"
    )


def _leading_json(text: str) -> Any:
    """Decode the JSON document at the start of ``text``, ignoring trailing bytes."""
    value, _ = json.JSONDecoder().raw_decode(text)
    return value


def unwrap_soap_result(text: str, operation: str) -> Any:
    """
    Pull the JSON payload out of a SOAP response.

    The service answers either with a normal envelope whose
    ``<{operation}Result>`` element holds JSON text, or with the bare JSON
    array followed by the envelope. Anything unrecognized (an HTML error
    page, truncated XML) is returned as text for the normalizer to classify.
    """
    body = text.strip()
    if not body or is_error_page(body):
        return body
    if body[0] in "[{":
        try:
            return _leading_json(body)
        except ValueError:
            return body

    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return body
    result_tag = f"{operation}Result"
    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1] == result_tag:
            inner = (element.text or "").strip()
            if not inner:
                return []
            try:
                return _leading_json(inner)
            except ValueError:
                return inner
    return body


class MetroSoapClient:
    """Client for the Taipei Metro open-data SOAP services (track info and car weights)."""

    TRACK_INFO = ("TrackInfo.asmx", "getTrackInfo")
    CAR_WEIGHT = ("CarWeight.asmx", "getCarWeightByInfo")
    CIRCULAR_CAR_WEIGHT = ("CarWeight.asmx", "getCarWeightByInfoEx")

    def __init__(
        self,
        user: str,
        passwd: str,
        *,
        base_url: str = METRO_BASE_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._user = user
        self._passwd = passwd
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_env(cls) -> "MetroSoapClient":
        """Build a ``MetroSoapClient`` from ``METRO_USER`` / ``METRO_PASSWD`` (``METRO_BASE_URL`` optional)."""
        user = (os.getenv("METRO_USER") or "").strip()
        passwd = (os.getenv("METRO_PASSWD") or "").strip()

        missing: List[str] = []
        if not user:
            missing.append("METRO_USER")
        if not passwd:
            missing.append("METRO_PASSWD")
        if missing:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(user=user, passwd=passwd, base_url=(os.getenv("METRO_BASE_URL") or METRO_BASE_URL).strip())

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(self, service: str, operation: str) -> FeedFetch:
        url = f"{self._base_url}/{service}"
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": f'"{SOAP_NAMESPACE}{operation}"',
        }
        envelope = build_soap_envelope(operation, self._user, self._passwd)
        try:
            client = await self._ensure_client()
            response = await client.post(url, content=envelope.encode("utf-8"), headers=headers)
        except httpx.HTTPError as exc:
            print(f"[metro] {operation} failed: {exc}")
            return FeedFetch(failure=FeedFailure.TRANSPORT, detail=str(exc))

        if response.status_code >= 400:
            return _failed_status(response, operation)
        return FeedFetch(payload=unwrap_soap_result(response.text, operation))

    async def track_info(self) -> FeedFetch:
        return await self.call(*self.TRACK_INFO)

    async def car_weight(self) -> FeedFetch:
        return await self.call(*self.CAR_WEIGHT)

    async def circular_car_weight(self) -> FeedFetch:
        return await self.call(*self.CIRCULAR_CAR_WEIGHT)
