"""EvmClient -- StacksCrossChainManager 合约封装（web3 AsyncWeb3 + eth_account）

读：eth_getLogs 拉取 manager 合约日志，按 topic0 匹配 ABI 事件解码。
写：processCrossChainMessage(...)，messageType 1 存入 / 2 取出 / 3 阶段确认 / 4 阶段更新。
每次写入先 eth_call 预执行，回滚原因以 ChainRevertError 暴露；
签名在本地完成（eth_account），同一账户的构造+发送串行化以避免 nonce 冲突。
"""

import asyncio
import hashlib
from typing import Any

import structlog
from brickvault.core.models import ChainId, PropertyStage, RawChainEvent
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .exceptions import (
    AlreadyAppliedError,
    ChainError,
    ChainRevertError,
    DispatchRejectedError,
    RpcUnreachableError,
)
from .revert import RevertClass, classify_revert

log = structlog.get_logger()

HEALTH_CHECK_TIMEOUT_S = 5

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

MESSAGE_TYPE_DEPOSIT = 1
MESSAGE_TYPE_WITHDRAWAL = 2
MESSAGE_TYPE_STAGE_ACK = 3
MESSAGE_TYPE_STAGE_UPDATE = 4

MANAGER_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "processCrossChainMessage",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "messageId", "type": "bytes32"},
            {"name": "messageType", "type": "uint8"},
            {"name": "propertyId", "type": "uint256"},
            {"name": "evmCustodian", "type": "address"},
            {"name": "stacksAddress", "type": "string"},
            {"name": "amount", "type": "uint256"},
            {"name": "stacksTxHash", "type": "bytes32"},
            {"name": "proof", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getEvmCustodian",
        "stateMutability": "view",
        "inputs": [{"name": "stacksAddress", "type": "string"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "isMessageProcessed",
        "stateMutability": "view",
        "inputs": [{"name": "messageId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "getAvailableLiquidity",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "getTotalStacksDeposits",
        "stateMutability": "view",
        "inputs": [{"name": "propertyId", "type": "uint256"}],
        "outputs": [
            {"name": "totalSbtc", "type": "uint256"},
            {"name": "totalUsdValue", "type": "uint256"},
            {"name": "totalShares", "type": "uint256"},
        ],
    },
    {
        "type": "event",
        "name": "StacksStageChange",
        "anonymous": False,
        "inputs": [
            {"name": "propertyId", "type": "uint256", "indexed": True},
            {"name": "newStage", "type": "uint8", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "StacksStageOverride",
        "anonymous": False,
        "inputs": [
            {"name": "propertyId", "type": "uint256", "indexed": True},
            {"name": "newStage", "type": "uint8", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "StacksStageAcknowledged",
        "anonymous": False,
        "inputs": [
            {"name": "propertyId", "type": "uint256", "indexed": True},
            {"name": "stage", "type": "uint8", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "CrossChainMessageProcessed",
        "anonymous": False,
        "inputs": [
            {"name": "messageId", "type": "bytes32", "indexed": True},
            {"name": "messageType", "type": "uint8", "indexed": False},
        ],
    },
]

# topic0 -> 事件名
EVENT_TOPICS: dict[str, str] = {
    Web3.to_hex(Web3.keccak(text=signature)): name
    for name, signature in (
        ("StacksStageChange", "StacksStageChange(uint256,uint8)"),
        ("StacksStageOverride", "StacksStageOverride(uint256,uint8)"),
        ("StacksStageAcknowledged", "StacksStageAcknowledged(uint256,uint8)"),
        ("CrossChainMessageProcessed", "CrossChainMessageProcessed(bytes32,uint8)"),
    )
}

# 连接类异常（aiohttp 异常按名称识别，不直接依赖 aiohttp）
_CONNECTION_ERROR_TYPES = (ConnectionError, OSError, TimeoutError, asyncio.TimeoutError)
_CONNECTION_ERROR_NAMES = (
    "ClientConnectorError",
    "ClientConnectionError",
    "ServerDisconnectedError",
    "ServerTimeoutError",
)


def _is_connection_error(e: Exception) -> bool:
    if isinstance(e, _CONNECTION_ERROR_TYPES):
        return True
    return type(e).__name__ in _CONNECTION_ERROR_NAMES


def to_bytes32(value: str) -> bytes:
    """0x 开头的 32 字节十六进制直接解码，其他字符串取 sha256"""
    if value.startswith("0x") and len(value) == 66:
        try:
            return bytes.fromhex(value[2:])
        except ValueError:
            pass
    return hashlib.sha256(value.encode("utf-8")).digest()


def _plain(value: Any) -> Any:
    """解码后的 ABI 值转为 JSON 友好的 Python 值"""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


def revert_from_message(message: str, tx_hash: str | None = None) -> ChainError:
    """由节点返回的回滚信息构造异常"""
    reason = message.removeprefix("execution reverted: ").removeprefix("execution reverted")
    reason = reason.strip() or "execution reverted"
    if classify_revert(reason) == RevertClass.ALREADY_APPLIED:
        return AlreadyAppliedError(reason, tx_hash)
    return ChainRevertError(reason, tx_hash)


class EvmClient:
    """EVM 链客户端"""

    chain = ChainId.EVM

    def __init__(
        self,
        rpc_url: str,
        manager_address: str,
        private_key: str = "",
        gas_limit: int = 500_000,
        timeout_s: float = 30.0,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        """初始化 EVM 客户端

        Args:
            rpc_url: JSON-RPC 地址
            manager_address: StacksCrossChainManager 合约地址
            private_key: relayer 私钥（为空时只读）
            gas_limit: 单笔交易 gas 上限
            timeout_s: RPC 请求超时（秒）
            w3: 外部注入的 AsyncWeb3 实例
        """
        self._rpc_url = rpc_url
        self._w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s})
        )
        self._address = Web3.to_checksum_address(manager_address)
        self._contract = self._w3.eth.contract(address=self._address, abi=MANAGER_ABI)
        self._account = Account.from_key(private_key) if private_key else None
        self._gas_limit = gas_limit
        self._send_lock = asyncio.Lock()

    async def aclose(self) -> None:
        """关闭 provider 缓存的 HTTP 会话"""
        await self._w3.provider.disconnect()

    def _wrap(self, e: Exception, action: str) -> ChainError:
        """把 web3 / 传输层异常映射到 ChainError 体系"""
        if isinstance(e, ChainError):
            return e
        if isinstance(e, ContractLogicError):
            return revert_from_message(str(e.message or e))
        if _is_connection_error(e):
            return RpcUnreachableError(endpoint=self._rpc_url, original_error=e)
        if isinstance(e, Web3Exception):
            return revert_from_message(str(e))
        return ChainError(f"EVM {action} 失败: {type(e).__name__}: {e}")

    async def get_block_height(self) -> int:
        try:
            return await self._w3.eth.block_number
        except Exception as e:
            raise self._wrap(e, "block_number") from e

    def _decode_log(self, entry: Any) -> dict[str, Any]:
        topics = entry.get("topics") or []
        name = EVENT_TOPICS.get(Web3.to_hex(topics[0])) if topics else None
        if name is None:
            return {"event": "", "topics": [Web3.to_hex(t) for t in topics]}
        try:
            decoded = getattr(self._contract.events, name)().process_log(entry)
        except Web3Exception as e:
            log.warning("evm_log_decode_failed", event_name=name, error=str(e))
            return {"event": "", "undecodable": name}
        return {"event": decoded["event"], **{k: _plain(v) for k, v in decoded["args"].items()}}

    async def get_events(self, from_height: int, to_height: int) -> list[RawChainEvent]:
        """读取 [from_height, to_height] 内 manager 合约的日志"""
        try:
            logs = await self._w3.eth.get_logs(
                {"address": self._address, "fromBlock": from_height, "toBlock": to_height}
            )
        except Exception as e:
            raise self._wrap(e, "get_logs") from e

        return [
            RawChainEvent(
                chain=ChainId.EVM,
                tx_hash=Web3.to_hex(entry["transactionHash"]),
                block_height=entry["blockNumber"],
                index=entry["logIndex"],
                body=self._decode_log(entry),
            )
            for entry in logs
        ]

    async def _process_message(
        self,
        message_id: str,
        message_type: int,
        property_id: int,
        custodian: str,
        stacks_address: str,
        amount: int,
        source_tx_hash: str,
        proof: bytes,
    ) -> str:
        """预执行 + 签名 + 发送 processCrossChainMessage，返回交易哈希"""
        if self._account is None:
            raise DispatchRejectedError("relayer key not configured")

        fn = self._contract.functions.processCrossChainMessage(
            to_bytes32(message_id),
            message_type,
            property_id,
            Web3.to_checksum_address(custodian),
            stacks_address,
            amount,
            to_bytes32(source_tx_hash),
            proof,
        )
        sender = self._account.address

        async with self._send_lock:
            try:
                await fn.call({"from": sender})
                tx = await fn.build_transaction(
                    {
                        "from": sender,
                        "nonce": await self._w3.eth.get_transaction_count(sender, "pending"),
                        "gas": self._gas_limit,
                    }
                )
                signed = self._account.sign_transaction(tx)
                tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as e:
                raise self._wrap(e, "processCrossChainMessage") from e

        tx_hex = Web3.to_hex(tx_hash)
        log.info(
            "evm_message_submitted",
            message_id=message_id,
            message_type=message_type,
            property_id=property_id,
            tx_hash=tx_hex,
        )
        return tx_hex

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
        return await self._process_message(
            message_id, MESSAGE_TYPE_DEPOSIT, property_id, custodian, principal,
            amount, source_tx_hash, proof,
        )

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
        return await self._process_message(
            message_id, MESSAGE_TYPE_WITHDRAWAL, property_id, custodian, principal,
            amount, source_tx_hash, proof,
        )

    async def submit_stage_update(
        self,
        message_id: str,
        property_id: int,
        stage: PropertyStage,
        source_tx_hash: str,
        proof: bytes,
    ) -> str:
        return await self._process_message(
            message_id, MESSAGE_TYPE_STAGE_UPDATE, property_id, ZERO_ADDRESS, "",
            int(stage), source_tx_hash, proof,
        )

    async def submit_stage_acknowledgment(
        self,
        message_id: str,
        property_id: int,
        stage: PropertyStage,
        source_tx_hash: str,
        proof: bytes,
    ) -> str:
        # amount 字段承载阶段值
        return await self._process_message(
            message_id, MESSAGE_TYPE_STAGE_ACK, property_id, ZERO_ADDRESS, "",
            int(stage), source_tx_hash, proof,
        )

    async def wait_for_receipt(self, tx_hash: str, timeout_s: float) -> None:
        """等待交易回执

        Raises:
            ChainRevertError: 回执 status == 0
            ChainError: 超时（可重试）
        """
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout_s)
        except TimeExhausted as e:
            raise ChainError(f"等待交易回执超时: {tx_hash}", recoverable=True) from e
        except Exception as e:
            raise self._wrap(e, "wait_for_transaction_receipt") from e
        if receipt["status"] == 0:
            raise ChainRevertError("transaction reverted on chain", tx_hash)

    async def get_evm_custodian(self, stacks_address: str) -> str | None:
        """查询 Stacks principal 注册的 EVM custodian，未注册返回 None"""
        try:
            custodian = await self._contract.functions.getEvmCustodian(stacks_address).call()
        except Exception as e:
            raise self._wrap(e, "getEvmCustodian") from e
        if not custodian or int(custodian, 16) == 0:
            return None
        return Web3.to_checksum_address(custodian)

    async def get_available_liquidity(self) -> int:
        try:
            return int(await self._contract.functions.getAvailableLiquidity().call())
        except Exception as e:
            raise self._wrap(e, "getAvailableLiquidity") from e

    async def get_minted_balance(self, property_id: int) -> int:
        """manager 记录的该资产 Stacks 存入总额（18 位精度的 totalSbtc）"""
        try:
            total_sbtc, _, _ = await self._contract.functions.getTotalStacksDeposits(
                property_id
            ).call()
        except Exception as e:
            raise self._wrap(e, "getTotalStacksDeposits") from e
        return int(total_sbtc)

    async def health_check(self) -> bool:
        """检查 RPC 可达性

        注意: 此方法不抛出异常，所有异常内部捕获并返回 False。
        """
        try:
            return await asyncio.wait_for(self._w3.is_connected(), HEALTH_CHECK_TIMEOUT_S)
        except Exception as e:
            log.warning("evm_health_check_failed", error=str(e))
            return False
