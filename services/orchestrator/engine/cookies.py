"""Cookie store shared by the invocations of one flow run."""

import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional


@dataclass
class Cookie:
    name: str
    value: str
    domain: str = ""
    path: Optional[str] = None
    expires: Optional[int] = None
    secure: bool = False
    http_only: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_domain: str = "") -> "Cookie":
        return cls(
            name=str(data.get("name", "")),
            value=str(data.get("value", "")),
            domain=data.get("domain") or default_domain,
            path=data.get("path"),
            expires=data.get("expires"),
            secure=bool(data.get("secure", False)),
            http_only=bool(data.get("http_only", False)),
        )

    def matches_domain(self, hostname: str) -> bool:
        if not self.domain:
            return True
        domain = self.domain.lstrip(".").lower()
        hostname = hostname.lower()
        return hostname == domain or hostname.endswith("." + domain)


def cookies_from_jar(jar: Any, default_domain: str = "") -> List[Cookie]:
    """Converts a requests cookie jar into Cookie records"""
    return [
        Cookie(
            name=cookie.name,
            value=cookie.value or "",
            domain=cookie.domain or default_domain,
            path=cookie.path,
            expires=cookie.expires,
            secure=bool(cookie.secure),
            http_only=cookie.has_nonstandard_attr("HttpOnly"),
        )
        for cookie in jar
    ]


class CookieStore:
    """Cookies received during a flow run, keyed by the invocation that received them"""

    def __init__(self):
        self._cookies: Dict[str, List[Cookie]] = {}
        self._lock = threading.Lock()

    def store(self, invocation_id: str, cookies: List[Cookie]) -> None:
        with self._lock:
            self._cookies[invocation_id] = list(cookies)

    def clear(self) -> None:
        with self._lock:
            self._cookies.clear()

    def all_cookies(self) -> List[Cookie]:
        """Every stored cookie with a non-empty value"""
        with self._lock:
            return [cookie for cookies in self._cookies.values() for cookie in cookies if cookie.value]

    def cookies_for(self, hostname: str) -> List[Cookie]:
        return [cookie for cookie in self.all_cookies() if cookie.matches_domain(hostname)]

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        with self._lock:
            return {key: [cookie.to_dict() for cookie in cookies] for key, cookies in self._cookies.items()}

    def __len__(self) -> int:
        with self._lock:
            return sum(len(cookies) for cookies in self._cookies.values())


def cookie_header(cookies: List[Cookie]) -> Optional[str]:
    if not cookies:
        return None
    return "; ".join(f"{cookie.name}={cookie.value}" for cookie in cookies)
