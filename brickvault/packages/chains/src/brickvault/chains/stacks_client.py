"""StacksApiClient -- Stacks API（Hiro）+ 签名代理封装

读：
- 链头高度 GET /v2/info
- 区块交易 GET /extended/v2/blocks/{height}/transactions
- 交易事件 GET /extended/v1/tx/{tx_id}，提取 gateway 合约的 print 事件
写：
- relayer-update-stage / relayer-acknowledge-stage 通过签名代理提交。
  代理持有 Stacks 私钥并负责构造、签名、广播交易，relayer 只持有代理访问密钥。
"""

import asyncio
import time
from typing import Any

import httpx
import structlog
from brickvault.core.models import ChainId, PropertyStage, RawChainEvent

from .clarity import ClarityParseError, parse_clarity_repr
from .exceptions import (
    AlreadyAppliedError,
    AmbiguousResponseError,
    ChainError,
    ChainRevertError,
    DispatchRejectedError,
    RpcUnreachableError,
)
from .revert import RevertClass, classify_revert, describe_clarity_result

log = structlog.get_logger()

# 健康检查超时（应快速响应）
HEALTH_CHECK_TIMEOUT_S = 5

# 单页交易数（API 上限 50）
_PAGE_LIMIT = 50

# 连接类异常类型集合
_CONNECTION_ERROR_TYPES = (
    ConnectionError,
    OSError,
    TimeoutError,
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.TimeoutException,
    httpx.RemoteProtocolError,
)


def proof_to_uint(proof: bytes) -> int:
    """proof 哈希前 16 字节转为 Clarity uint（128 位）"""
    return int.from_bytes(proof[:16], "big")


class StacksApiClient:
    """Stacks 链客户端"""

    chain = ChainId.STACKS

    def __init__(
        self,
        api_url: str,
        contract_address: str,
        signer_url: str = "",
        signer_api_key: str = "",
        timeout_s: float = 30.0,
        receipt_poll_s: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """初始化 Stacks 客户端

        Args:
            api_url: Stacks API 基础 URL
            contract_address: gateway 合约 <address>.<name>
            signer_url: 签名代理地址
            signer_api_key: 签名代理访问密钥
            timeout_s: 单次请求超时（秒）
            receipt_poll_s: 等待交易确认时的轮询间隔（秒）
            http_client: 外部注入的 httpx 客户端（测试使用 MockTransport）
        """
        self._api_url = api_url.rstrip("/")
        self._contract_id = contract_address
        self._contract_principal, _, self._contract_name = contract_address.partition(".")
        self._signer_url = signer_url.rstrip("/")
        self._signer_api_key = signer_api_key
        self._receipt_poll_s = receipt_poll_s
        self._client = http_client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            if isinstance(e, _CONNECTION_ERROR_TYPES):
                raise RpcUnreachableError(endpoint=url, original_error=e) from e
            raise ChainError(f"Stacks API 请求失败: {e}") from e

    async def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self._api_url}{path}"
        resp = await self._request("GET", url, params=params)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RpcUnreachableError(
                endpoint=url,
                original_error=httpx.HTTPStatusError(
                    f"HTTP {resp.status_code}", request=resp.request, response=resp
                ),
            )
        if resp.status_code != 200:
            raise AmbiguousResponseError(f"GET {path} 返回 HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise AmbiguousResponseError(f"GET {path} 返回非 JSON 内容") from e

    async def get_block_height(self) -> int:
        """当前链头高度"""
        info = await self._get_json("/v2/info")
        try:
            return int(info["stacks_tip_height"])
        except (KeyError, TypeError, ValueError) as e:
            raise AmbiguousResponseError("/v2/info 缺少 stacks_tip_height") from e

    async def _block_transactions(self, height: int) -> list[dict[str, Any]]:
        """分页读取区块内全部交易"""
        txs: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = await self._get_json(
                f"/extended/v2/blocks/{height}/transactions",
                params={"limit": _PAGE_LIMIT, "offset": offset},
            )
            results = page.get("results") if isinstance(page, dict) else None
            if not isinstance(results, list):
                raise AmbiguousResponseError(f"区块 {height} 交易列表格式错误")
            txs.extend(results)
            total = page.get("total", len(txs))
            offset += len(results)
            if not results or offset >= total:
                return txs

    def _is_gateway_call(self, tx: dict[str, Any]) -> bool:
        return (
            tx.get("tx_status") == "success"
            and tx.get("tx_type") == "contract_call"
            and (tx.get("contract_call") or {}).get("contract_id") == self._contract_id
        )

    async def _print_events(self, tx_id: str, height: int) -> list[RawChainEvent]:
        detail = await self._get_json(f"/extended/v1/tx/{tx_id}")
        events = detail.get("events") if isinstance(detail, dict) else None
        if not isinstance(events, list):
            raise AmbiguousResponseError(f"交易 {tx_id} 事件列表格式错误")

        raw_events: list[RawChainEvent] = []
        for event in events:
            if event.get("event_type") != "smart_contract_log":
                continue
            contract_log = event.get("contract_log") or {}
            if contract_log.get("contract_id") != self._contract_id:
                continue
            if contract_log.get("topic") != "print":
                continue
            value_repr = (contract_log.get("value") or {}).get("repr", "")
            try:
                body = parse_clarity_repr(value_repr)
            except ClarityParseError:
                # 交给 Normalizer 丢弃，不阻塞游标
                body = {"unparsed": value_repr}
            if not isinstance(body, dict):
                body = {"value": body}
            raw_events.append(
                RawChainEvent(
                    chain=ChainId.STACKS,
                    tx_hash=tx_id,
                    block_height=height,
                    index=int(event.get("event_index", 0)),
                    body=body,
                )
            )
        return raw_events

    async def get_events(self, from_height: int, to_height: int) -> list[RawChainEvent]:
        """扫描 [from_height, to_height] 区块内 gateway 合约的 print 事件"""
        collected: list[RawChainEvent] = []
        for height in range(from_height, to_height + 1):
            for tx in await self._block_transactions(height):
                if not self._is_gateway_call(tx):
                    continue
                collected.extend(await self._print_events(tx["tx_id"], height))
        return collected

    async def _contract_call(self, function_name: str, args: list[dict[str, str]], memo: str) -> str:
        """通过签名代理提交合约调用，返回 txid"""
        url = f"{self._signer_url}/v1/contract-call"
        headers = {"Authorization": f"Bearer {self._signer_api_key}"} if self._signer_api_key else {}
        resp = await self._request(
            "POST",
            url,
            json={
                "contract_address": self._contract_principal,
                "contract_name": self._contract_name,
                "function_name": function_name,
                "function_args": args,
                "memo": memo,
            },
            headers=headers,
        )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RpcUnreachableError(
                endpoint=url,
                original_error=httpx.HTTPStatusError(
                    f"HTTP {resp.status_code}", request=resp.request, response=resp
                ),
            )
        try:
            payload = resp.json()
        except ValueError as e:
            raise AmbiguousResponseError("签名代理返回非 JSON 内容") from e

        if resp.status_code != 200:
            reason = describe_clarity_result(str(payload.get("error", f"HTTP {resp.status_code}")))
            if classify_revert(reason) == RevertClass.ALREADY_APPLIED:
                raise AlreadyAppliedError(reason)
            raise ChainRevertError(reason)

        txid = payload.get("txid")
        if not txid:
            raise AmbiguousResponseError("签名代理响应缺少 txid")
        log.info("stacks_call_submitted", function=function_name, txid=txid, memo=memo)
        return txid

    async def submit_credit(
        self,
        message_id: str,
        property_id: int,
        custodian: str,
        principal: str,
        amount: int,
        source_tx_hash: str,
        proof: bytes,
    ) -> str:
        raise DispatchRejectedError("stacks gateway does not accept relayer credits")

    async def submit_debit(
        self,
        message_id: str,
        property_id: int,
        custodian: str,
        principal: str,
        amount: int,
        source_tx_hash: str,
        proof: bytes,
    ) -> str:
        raise DispatchRejectedError("stacks gateway does not accept relayer debits")

    async def submit_stage_update(
        self,
        message_id: str,
        property_id: int,
        stage: PropertyStage,
        source_tx_hash: str,
        proof: bytes,
    ) -> str:
        """relayer-update-stage(property-id, stage, proof)"""
        return await self._contract_call(
            "relayer-update-stage",
            [
                {"type": "uint", "value": str(property_id)},
                {"type": "uint", "value": str(int(stage))},
                {"type": "uint", "value": str(proof_to_uint(proof))},
            ],
            memo=message_id,
        )

    async def submit_stage_acknowledgment(
        self,
        message_id: str,
        property_id: int,
        stage: PropertyStage,
        source_tx_hash: str,
        proof: bytes,
    ) -> str:
        """relayer-acknowledge-stage(property-id, stage, proof)"""
        return await self._contract_call(
            "relayer-acknowledge-stage",
            [
                {"type": "uint", "value": str(property_id)},
                {"type": "uint", "value": str(int(stage))},
                {"type": "uint", "value": str(proof_to_uint(proof))},
            ],
            memo=message_id,
        )

    async def wait_for_receipt(self, tx_hash: str, timeout_s: float) -> None:
        """轮询交易状态直到上链

        Raises:
            ChainRevertError: 交易被 abort / drop
            ChainError: 超时（可重试）
        """
        deadline = time.monotonic() + timeout_s
        while True:
            resp = await self._request("GET", f"{self._api_url}/extended/v1/tx/{tx_hash}")
            if resp.status_code == 200:
                try:
                    tx = resp.json()
                except ValueError as e:
                    raise AmbiguousResponseError(f"交易 {tx_hash} 返回非 JSON 内容") from e
                status = tx.get("tx_status", "")
                if status == "success":
                    return
                if status.startswith("abort") or status.startswith("dropped"):
                    result = (tx.get("tx_result") or {}).get("repr", status)
                    reason = describe_clarity_result(result)
                    if classify_revert(reason) == RevertClass.ALREADY_APPLIED:
                        raise AlreadyAppliedError(reason, tx_hash)
                    raise ChainRevertError(reason, tx_hash)
            elif resp.status_code != 404 and resp.status_code < 500:
                raise AmbiguousResponseError(f"交易 {tx_hash} 查询返回 HTTP {resp.status_code}")

            if time.monotonic() >= deadline:
                raise ChainError(f"等待交易确认超时: {tx_hash}", recoverable=True)
            await asyncio.sleep(self._receipt_poll_s)

    async def health_check(self) -> bool:
        """检查 Stacks API 可达性

        注意: 此方法不抛出异常，所有异常内部捕获并返回 False。
        """
        try:
            resp = await self._client.get(
                f"{self._api_url}/v2/info", timeout=HEALTH_CHECK_TIMEOUT_S
            )
            return resp.status_code == 200
        except Exception as e:
            log.warning("stacks_health_check_failed", error=str(e))
            return False
