"""
Minimal JSON-over-HTTP helper for probes and service admin APIs.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen


@dataclass
class HttpResponse:
    """Status and body of one request."""

    status: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


def request(
    method: str,
    url: str,
    payload: Any = None,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 10.0,
) -> HttpResponse:
    """
    Performs one HTTP request.

    Non-2xx responses are returned, not raised; connection failures raise
    ``URLError``/``OSError``.

    :param method: HTTP method.
    :param url: Absolute URL.
    :param payload: Optional JSON-serializable body.
    :param headers: Extra request headers.
    :param timeout: Socket timeout in seconds.
    :return: The response status and decoded body.
    """
    data = None
    req_headers = {"Accept": "application/json"}
    if payload is not None:
        data = json.dumps(payload).encode()
        req_headers["Content-Type"] = "application/json"
    req_headers.update(headers or {})

    req = Request(url, data=data, method=method.upper(), headers=req_headers)
    try:
        with urlopen(req, timeout=timeout) as response:
            return HttpResponse(status=response.status, body=response.read().decode(errors="replace"))
    except HTTPError as e:
        body = e.read().decode(errors="replace") if e.fp else ""
        return HttpResponse(status=e.code, body=body)


__all__ = ["HttpResponse", "request", "URLError"]
