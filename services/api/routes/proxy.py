"""Proxy relay route used for server-side cookie handling."""

import logging
from typing import Any, List
from urllib.parse import urlparse
from fastapi import APIRouter, HTTPException, status
import requests
from requests.exceptions import RequestException, Timeout, ConnectionError
from services.api.domain.models import ProxyCookie, ProxyRequest, ProxyResponse
from services.api.domain.validation import RunValidationError, validate_proxy_target

router = APIRouter()


def parse_body(response: requests.Response) -> Any:
    if not response.content:
        return None

    content_type = response.headers.get("content-type", "").lower()
    if content_type.startswith("text/"):
        return response.text

    try:
        return response.json()
    except ValueError:
        return response.text


def extract_cookies(response: requests.Response, default_domain: str) -> List[ProxyCookie]:
    """Cookies the target set through Set-Cookie"""
    return [
        ProxyCookie(
            name=cookie.name,
            value=cookie.value or "",
            domain=cookie.domain or default_domain,
            path=cookie.path,
            expires=cookie.expires,
            secure=bool(cookie.secure),
            http_only=cookie.has_nonstandard_attr("HttpOnly"),
        )
        for cookie in response.cookies
    ]


@router.post("/proxy/request", response_model=ProxyResponse)
def proxy_request(request: ProxyRequest):
    try:
        validate_proxy_target(request.url)
    except RunValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    headers = dict(request.headers)
    cookies = [cookie for cookie in request.cookies if cookie.value]
    if cookies:
        headers["Cookie"] = "; ".join(f"{cookie.name}={cookie.value}" for cookie in cookies)

    logging.info("Proxying request", extra={"method": request.method, "url": request.url, "cookies": len(cookies)})

    try:
        response = requests.request(
            request.method.upper(),
            request.url,
            headers=headers,
            data=request.body.encode("utf-8") if request.body is not None else None,
            timeout=request.timeout_seconds
        )
    except Timeout:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT,
                            detail=f"Request to {request.url} timed out")
    except (ConnectionError, RequestException) as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY,
                            detail=f"Request to {request.url} failed: {str(e)}")

    hostname = urlparse(request.url).hostname or ""
    return ProxyResponse(
        status=response.status_code,
        status_text=response.reason or "",
        headers=dict(response.headers),
        body=parse_body(response),
        cookies=extract_cookies(response, hostname)
    )
