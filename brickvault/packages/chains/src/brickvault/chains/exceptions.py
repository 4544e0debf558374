"""链适配层异常体系

所有异常携带 recoverable 标记：True 进入重试调度，False 直接 FailedPermanent。
"""

from .revert import is_retryable_revert


class ChainError(Exception):
    """链适配层基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class RpcUnreachableError(ChainError):
    """RPC / API 不可达（连接失败、超时、限流等）"""

    def __init__(self, endpoint: str, original_error: Exception) -> None:
        """
        Args:
            endpoint: 尝试连接的地址
            original_error: 原始异常
        """
        super().__init__(
            f"RPC 不可达: {endpoint} -- {type(original_error).__name__}: {original_error}",
            recoverable=True,
        )
        self.endpoint = endpoint
        self.original_error = original_error


class AmbiguousResponseError(ChainError):
    """响应格式错误或不完整 -- observer 不推进游标"""

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=True)


class ChainRevertError(ChainError):
    """目标链调用被回滚，recoverable 由回滚原因分类决定"""

    def __init__(self, reason: str, tx_hash: str | None = None) -> None:
        super().__init__(f"调用回滚: {reason}", recoverable=is_retryable_revert(reason))
        self.reason = reason
        self.tx_hash = tx_hash


class AlreadyAppliedError(ChainError):
    """目标链报告该 message id 已处理 -- 视为确认"""

    def __init__(self, reason: str, tx_hash: str | None = None) -> None:
        super().__init__(f"目标链已处理: {reason}", recoverable=False)
        self.reason = reason
        self.tx_hash = tx_hash


class DispatchRejectedError(ChainError):
    """relayer 侧业务规则拒绝（未注册地址、低于最小金额等），不可重试"""

    def __init__(self, reason: str) -> None:
        super().__init__(reason, recoverable=False)
        self.reason = reason
