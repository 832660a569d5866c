"""HTTP transports used to send prepared invocation requests."""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
import requests
from requests.exceptions import RequestException, Timeout, ConnectionError
from shared.constants import DEFAULT_REQUEST_TIMEOUT_MS, RETRYABLE_HTTP_STATUS_CODES
from shared.exceptions import RequestTimeoutError, TaskError, TransportError
from services.orchestrator.engine.cookies import Cookie, CookieStore, cookie_header, cookies_from_jar

DEFAULT_PROXY_RELAY_URL = "http://localhost:8000/proxy/request"


@dataclass
class TransportRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_MS / 1000
    cookies: List[Cookie] = field(default_factory=list)

    @property
    def hostname(self) -> str:
        return urlparse(self.url).hostname or ""


@dataclass
class TransportResponse:
    status_code: int
    reason: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    cookies: List[Cookie] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def parse_response_body(response: requests.Response) -> Any:
    """JSON when declared or parseable, text otherwise, None for an empty body"""
    if not response.content:
        return None

    content_type = response.headers.get("content-type", "").lower()
    if content_type.startswith("text/"):
        return response.text

    try:
        return response.json()
    except ValueError:
        return response.text


def encode_body(body: Any) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, str):
        return body
    return json.dumps(body)


def _network_error(e: Exception, url: str) -> TransportError:
    error = TaskError(
        error_type="NETWORK_ERROR",
        error_message=f"Network error: {str(e)}",
        is_retryable=True,
        context={"url": url, "error_class": type(e).__name__}
    )
    if isinstance(e, Timeout):
        return RequestTimeoutError(f"Request timed out: {url}", task_error=error)
    return TransportError(error.error_message, task_error=error)


def _request_error(e: Exception, url: str) -> TransportError:
    error = TaskError(
        error_type="REQUEST_ERROR",
        error_message=f"Request failed: {str(e)}",
        is_retryable=False,
        context={"url": url}
    )
    return TransportError(error.error_message, task_error=error)


class Transport:
    """Sends one request and returns the target's response"""

    def send(self, request: TransportRequest) -> TransportResponse:
        raise NotImplementedError

    def select_cookies(self, store: CookieStore, hostname: str) -> List[Cookie]:
        return store.cookies_for(hostname)


class DirectTransport(Transport):
    """Calls the target directly, attaching matching cookies as a Cookie header"""

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def send(self, request: TransportRequest) -> TransportResponse:
        headers = dict(request.headers)
        header = cookie_header(request.cookies)
        if header:
            headers["Cookie"] = header

        has_content_type = any(name.lower() == "content-type" for name in headers)
        if not has_content_type and request.body is not None and not isinstance(request.body, str):
            headers["Content-Type"] = "application/json"

        try:
            response = self.session.request(
                request.method,
                request.url,
                headers=headers,
                data=encode_body(request.body),
                timeout=request.timeout_seconds
            )
        except (Timeout, ConnectionError) as e:
            raise _network_error(e, request.url)
        except RequestException as e:
            raise _request_error(e, request.url)

        return TransportResponse(
            status_code=response.status_code,
            reason=response.reason or "",
            headers=dict(response.headers),
            body=parse_response_body(response),
            cookies=cookies_from_jar(response.cookies, request.hostname),
        )


class ProxiedTransport(Transport):
    """Sends the request through the proxy relay, which manages cookies server side"""

    def __init__(self, relay_url: Optional[str] = None, session: Optional[requests.Session] = None):
        self.relay_url = relay_url or os.getenv("PROXY_RELAY_URL", DEFAULT_PROXY_RELAY_URL)
        self.session = session or requests.Session()

    def select_cookies(self, store: CookieStore, hostname: str) -> List[Cookie]:
        return store.all_cookies()

    def send(self, request: TransportRequest) -> TransportResponse:
        payload = {
            "url": request.url,
            "method": request.method,
            "headers": request.headers,
            "body": encode_body(request.body),
            "cookies": [cookie.to_dict() for cookie in request.cookies if cookie.value],
            "timeout_seconds": request.timeout_seconds,
        }

        try:
            relay_response = self.session.post(
                self.relay_url,
                json=payload,
                timeout=request.timeout_seconds + 5
            )
        except (Timeout, ConnectionError) as e:
            raise _network_error(e, request.url)
        except RequestException as e:
            raise _request_error(e, request.url)

        try:
            data = relay_response.json()
        except ValueError:
            data = {}

        if relay_response.status_code != 200:
            detail = data.get("detail") or data.get("error") or relay_response.text
            error = TaskError(
                error_type="PROXY_ERROR",
                error_message=f"Proxy relay error {relay_response.status_code}: {detail}",
                http_status_code=relay_response.status_code,
                is_retryable=relay_response.status_code in RETRYABLE_HTTP_STATUS_CODES,
                context={"url": request.url, "relay_url": self.relay_url}
            )
            raise TransportError(error.error_message, task_error=error)

        return TransportResponse(
            status_code=int(data.get("status", 0)),
            reason=data.get("status_text", ""),
            headers=data.get("headers") or {},
            body=data.get("body"),
            cookies=[Cookie.from_dict(c, request.hostname) for c in data.get("cookies") or []],
        )
