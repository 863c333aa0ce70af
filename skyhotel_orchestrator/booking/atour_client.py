"""
Remote booking API client.

Async httpx client for the three-step booking workflow:

1. calculate_order  - price/availability calculation
2. add_app_order    - order creation
3. create_pay_order - payment session creation

Each step must answer HTTP 2xx with ``retcode == 0``. Anything else raises
RemoteStepFailed carrying the HTTP status and the remote code/message; a
timeout raises RemoteTimeout.
"""
import time
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
import structlog

from ..control_plane.errors import InvalidPayload, RemoteStepFailed, RemoteTimeout
from ..control_plane.models import OrderGroup, OrderItem, ProxyNode

logger = structlog.get_logger(__name__)


def to_remote_date(value: Any) -> str:
    """YYYY-MM-DD; today when empty."""
    if not value:
        return date.today().isoformat()
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value)[:10]


def _numeric(value: Any) -> Any:
    text = str(value)
    return int(text) if text.isdigit() else text


def build_calculate_payload(order: OrderGroup, item: OrderItem) -> Dict[str, Any]:
    rp_activity_id = item.rp_activity_id or item.rate_code_id
    if not item.rate_code or not rp_activity_id or not item.room_type_id:
        raise InvalidPayload(
            "missing rateCode/rpActivityId(room rate id)/roomTypeId on order item",
            order_item_id=item.id,
        )
    return {
        "chainId": str(order.chain_id),
        "roomTypeId": str(item.room_type_id),
        "roomCount": int(item.room_count or 1),
        "start": to_remote_date(item.check_in_date),
        "end": to_remote_date(item.check_out_date),
        "rateCode": str(item.rate_code),
        "rpActivityId": str(rp_activity_id),
        "rateCodePriceType": "2",
        "rateCodeActivities": item.rate_code_activities or "",
        "mobile": order.contact_phone or "",
        "checkInPersons": order.customer_name or "",
        "couponCodes": [],
    }


def build_add_order_payload(
    calculate_result: Dict[str, Any],
    calculate_payload: Dict[str, Any],
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "inactiveId": "",
        "activeId": "",
        "repeatToken": str(calculate_result.get("repeatToken") or ""),
        "invoiceType": "",
        "remark": "",
        "mergeInvoice": "",
        "rateCode": calculate_payload["rateCode"],
        "invoiceEmail": "",
        "rateCodePriceType": str(
            calculate_result.get("rateCodePriceType") or calculate_payload.get("rateCodePriceType") or "2"
        ),
        "roomCount": calculate_payload["roomCount"],
        "recipientsMobile": "",
        "start": calculate_payload["start"],
        "recipientsName": "",
        "customerNeedList": [],
        "expectArrivalTime": "",
        "getType": "0",
        "invoiceRemark": "",
        "rpActivityId": calculate_payload["rpActivityId"],
        "checkInPersons": customer_name or "",
        "isPointPayAppChannel": "1",
        "end": calculate_payload["end"],
        "breakfastCount": 0,
        "roomLevelUpCount": 0,
        "delayedCheckOutCount": 0,
        "shooseCount": 0,
        "delegatorId": "",
        "invoiceId": "",
        "orderAmount": float(calculate_result.get("defaultAmount") or calculate_result.get("amount") or 0),
        "mailAddr": "",
        "roomTypeId": _numeric(calculate_payload["roomTypeId"]),
        "mobile": customer_phone or "",
        "coupons": "",
        "customerNeeds": [],
        "chainId": _numeric(calculate_payload["chainId"]),
        "rateCodeActivities": calculate_payload.get("rateCodeActivities") or "",
    }


def build_pay_order_payload(chain_id: Any, order_no: Any) -> Dict[str, Any]:
    return {
        "chainId": str(chain_id),
        "source": "order",
        "orderNo": order_no,
        "busType": "room_order",
    }


class AtourClient:
    """Calls the remote booking API with a bounded timeout."""

    def __init__(self, settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.atour_order_api_base_url.rstrip("/")
        self.timeout = float(settings.remote_timeout_seconds)
        self._transport = transport

    def _headers(self, token: str) -> Dict[str, str]:
        headers = {
            "Accept": "*/*",
            "At-Platform-Type": self.settings.atour_platform_type,
            "At-Client-Id": self.settings.atour_client_id,
            "At-App-Version": self.settings.atour_app_version,
            "Content-Type": "application/json",
            "User-Agent": self.settings.atour_user_agent,
            "At-Access-Token": token,
            "At-Channel-Id": self.settings.atour_channel_id,
        }
        if self.settings.atour_cookie:
            headers["Cookie"] = self.settings.atour_cookie
        return headers

    def _query(self, token: str) -> str:
        return urlencode({
            "platType": self.settings.atour_platform_type,
            "appVer": self.settings.atour_app_version,
            "inactiveId": "",
            "channelId": self.settings.atour_channel_id,
            "token": token,
            "activitySource": "",
            "activeId": "",
        })

    def open_session(self, proxy: Optional[ProxyNode] = None) -> httpx.AsyncClient:
        options: Dict[str, Any] = {"timeout": httpx.Timeout(self.timeout)}
        if self._transport is not None:
            options["transport"] = self._transport
        elif proxy is not None:
            options["proxy"] = proxy.url
        return httpx.AsyncClient(**options)

    async def call_step(
        self,
        client: httpx.AsyncClient,
        step: str,
        path: str,
        token: str,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}?{self._query(token)}"
        started = time.monotonic()
        try:
            response = await client.post(url, headers=self._headers(token), json=payload or {})
        except httpx.TimeoutException:
            logger.warning("remote_step_timeout", step=step, timeout=self.timeout)
            raise RemoteTimeout(step, self.timeout)
        except httpx.TransportError as e:
            logger.warning("remote_step_transport_error", step=step, error=str(e))
            raise RemoteStepFailed(step, str(e) or type(e).__name__)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success or data.get("retcode") != 0:
            message = data.get("retmsg") or f"{step} failed"
            logger.warning(
                "remote_step_rejected",
                step=step,
                http_status=response.status_code,
                retcode=data.get("retcode"),
                retmsg=message,
            )
            raise RemoteStepFailed(step, message, http_status=response.status_code, remote_code=data.get("retcode"))

        logger.info("remote_step_ok", step=step, elapsed_ms=int((time.monotonic() - started) * 1000))
        return data.get("result") or {}

    async def run_order_workflow(
        self,
        token: str,
        calculate_payload: Dict[str, Any],
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        proxy: Optional[ProxyNode] = None,
        existing_order_id: Optional[str] = None,
        on_order_created: Optional[Callable[[str], Awaitable[Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Run calculate -> add order -> create pay order; any failure stops the workflow.

        ``on_order_created`` is awaited with the remote order id as soon as
        addAppOrder succeeds. With ``existing_order_id`` the remote order was
        already created by an earlier attempt: only the pay order is created.
        """
        async with self.open_session(proxy) as client:
            if existing_order_id:
                calculate_result = {}
                add_result = {"orderId": existing_order_id, "resumed": True}
            else:
                calculate_result = await self.call_step(
                    client, "calculateOrderV2", "/order/calculateOrderV2", token, calculate_payload
                )
                add_payload = build_add_order_payload(
                    calculate_result, calculate_payload, customer_name, customer_phone
                )
                add_result = await self.call_step(client, "addAppOrder", "/order/addAppOrder", token, add_payload)
                if not add_result.get("orderId"):
                    raise RemoteStepFailed("addAppOrder", "missing orderId")
                if on_order_created is not None:
                    await on_order_created(str(add_result["orderId"]))

            pay_payload = build_pay_order_payload(calculate_payload["chainId"], add_result["orderId"])
            pay_order_result = await self.call_step(
                client, "createPayOrder", "/pay/createPayOrder", token, pay_payload
            )

        return {
            "calculateResult": calculate_result,
            "addResult": add_result,
            "payOrderResult": pay_order_result,
        }
