"""HTTP delivery of a single queued request.

Requests are flat mappings sent as query parameters. Short requests go out
as GET; long ones (or every request with force_post) as a form-encoded POST.
A delivery only counts as successful when the server answers 2xx AND the
JSON body carries ``"result": "Success"``.
"""
from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

API_PATH = "/i"
BULK_API_PATH = "/i/bulk"
SUCCESS_MARKER = "Success"
POST_THRESHOLD = 2000


@dataclass
class DeliveryResult:
    ok: bool
    status: int = 0
    body: dict = field(default_factory=dict)
    error: str = ""


def encode_params(params: dict) -> str:
    """URL-encode a flat request, JSON-stringifying nested values."""
    pairs = []
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            value = json.dumps(value, separators=(",", ":"))
        elif isinstance(value, bool):
            value = "true" if value else "false"
        pairs.append((key, str(value)))
    return urllib.parse.urlencode(pairs, quote_via=urllib.parse.quote)


def parse_body(raw: bytes | str) -> dict:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def is_success(status: int, body: dict) -> bool:
    return 200 <= status < 300 and body.get("result") == SUCCESS_MARKER


class HttpTransport:
    """Sends one request per call. Never raises; failures come back as results."""

    def __init__(self, url: str, api_path: str = API_PATH, force_post: bool = False,
                 post_threshold: int = POST_THRESHOLD, timeout: float | None = None) -> None:
        self.url = url.rstrip("/")
        self.api_path = api_path
        self.force_post = force_post
        self.post_threshold = post_threshold
        self.timeout = timeout

    def build(self, params: dict) -> urllib.request.Request:
        data = encode_params(params)
        endpoint = self.url + self.api_path
        if self.force_post or len(data) >= self.post_threshold:
            body = data.encode("utf-8")
            return urllib.request.Request(
                endpoint,
                data=body,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Content-Length": str(len(body)),
                },
                method="POST",
            )
        return urllib.request.Request(endpoint + "?" + data, method="GET")

    def send(self, params: dict) -> DeliveryResult:
        if not self.url:
            return DeliveryResult(ok=False, error="no server url configured")
        try:
            req = self.build(params)
            logger.debug("Sending %s %s", req.get_method(), req.full_url[:200])
            kwargs = {} if self.timeout is None else {"timeout": self.timeout}
            with urllib.request.urlopen(req, **kwargs) as resp:
                status = resp.status
                body = parse_body(resp.read())
        except urllib.error.HTTPError as e:
            status = e.code
            body = parse_body(e.read() or b"")
            logger.debug("Delivery to %s failed: HTTP %d", self.url, status)
            return DeliveryResult(ok=False, status=status, body=body, error=str(e))
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            logger.debug("Delivery to %s failed: %s", self.url, e)
            return DeliveryResult(ok=False, error=str(e))

        ok = is_success(status, body)
        if not ok:
            logger.debug("Delivery to %s rejected: HTTP %d %s", self.url, status, body)
        return DeliveryResult(ok=ok, status=status, body=body)
