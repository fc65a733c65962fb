import hashlib
import logging
from typing import Mapping, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


def make_sign(params: Mapping[str, object], key: str) -> str:
    """MD5 over the sorted, non-empty parameters (sign and sign_type excluded) followed by the key."""
    pairs = [
        f"{k}={v}"
        for k, v in sorted(params.items())
        if k not in ("sign", "sign_type") and v not in (None, "")
    ]
    return hashlib.md5(("&".join(pairs) + key).encode("utf-8")).hexdigest()


def signed(params: Mapping[str, object], key: Optional[str]) -> dict:
    payload = {k: v for k, v in params.items() if v is not None}
    if key:
        payload["sign"] = make_sign(payload, key)
        payload["sign_type"] = "MD5"
    return payload


class Notifier(Protocol):
    def deliver(self, url: str, params: Mapping[str, object]) -> bool:
        ...


class HttpNotifier:
    """Posts form-encoded parameters; the receiver acknowledges with a ``success`` body."""

    def __init__(self, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.timeout = timeout
        self.client = client

    def deliver(self, url: str, params: Mapping[str, object]) -> bool:
        try:
            post = self.client.post if self.client is not None else httpx.post
            response = post(url, data={k: str(v) for k, v in params.items()}, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning(f"Notification to {url} failed: {e}")
            return False
        delivered = response.status_code == 200 and response.text.strip().lower() == "success"
        if not delivered:
            logger.warning(f"Notification to {url} not acknowledged (HTTP {response.status_code})")
        return delivered
