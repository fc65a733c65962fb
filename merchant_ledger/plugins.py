import json
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from decimal import Decimal
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ValidationError as PydanticValidationError

from .errors import UpstreamFailure

logger = logging.getLogger(__name__)


class UpstreamRefundRequest(BaseModel):
    trade_no: str
    upstream_trade_no: str
    refund_no: str
    refund_amount: Decimal
    total_amount: Decimal


class PluginResult(BaseModel):
    code: int
    msg: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == 0


class PaymentPlugin(Protocol):
    def refund(self, config: dict, request: UpstreamRefundRequest) -> Any:
        ...


def supports_refund(plugin: Any) -> bool:
    return callable(getattr(plugin, "refund", None))


def channel_config(channel) -> dict:
    """Stored JSON config merged with the channel's credential columns."""
    try:
        config = json.loads(channel.config) if channel.config else {}
    except ValueError:
        logger.warning(f"Channel {channel.id} has malformed config JSON, ignoring it")
        config = {}
    if not isinstance(config, dict):
        config = {}
    config.update({
        "appid": channel.app_id,
        "appmchid": channel.app_mch_id,
        "appkey": channel.app_key,
        "appsecret": channel.app_secret,
    })
    return config


class PluginRegistry:
    def __init__(self, timeout: float = 10.0, max_workers: int = 8):
        self.timeout = timeout
        self._plugins: dict[str, Any] = {}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="plugin")

    def register(self, name: str, plugin: Any) -> None:
        self._plugins[name] = plugin

    def get(self, name: Optional[str]) -> Optional[Any]:
        if not name:
            return None
        return self._plugins.get(name)

    def refund(self, plugin: Any, config: dict, request: UpstreamRefundRequest) -> PluginResult:
        """Call the plugin's refund with a bounded wait. A timeout counts as a failure."""
        future = self._executor.submit(plugin.refund, config, request)
        try:
            raw = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            logger.error(
                f"Refund {request.refund_no} for {request.trade_no} timed out after {self.timeout}s; "
                f"upstream state unknown, reconcile manually"
            )
            raise UpstreamFailure(f"Refund failed: upstream timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"Refund plugin raised for {request.trade_no}: {e}")
            raise UpstreamFailure(f"Refund failed: {e}", upstream_message=str(e)) from e

        try:
            result = PluginResult.model_validate(raw)
        except PydanticValidationError as e:
            raise UpstreamFailure("Refund failed: malformed upstream response") from e
        if not result.ok:
            message = result.msg or "unknown error"
            raise UpstreamFailure(f"Refund failed: {message}", upstream_message=result.msg)
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
