"""CLI 入口模块 -- python -m brickvault.core <command>

支持的命令：
  reset-message <message_id>  人工重置 FailedPermanent 记录（允许再次 try_begin）
  list-failed                 列出 FailedPermanent 记录
  show-cursors                显示各链观察游标
  show-config [env]           显示配置摘要（密钥脱敏）
  validate-config [env]       校验配置，存在问题时以非零状态退出

[env] 缺省时取 BRICKVAULT_ENV。
"""

import asyncio
import json
import os
import sys

from pydantic import ValidationError

from .config import (
    ConfigValidationError,
    RelayerConfig,
    config_summary,
    load_relayer_config,
    validate_config,
)
from .models import DispatchStatus

_USAGE = """用法: python -m brickvault.core <command>
命令:
  reset-message <message_id>  人工重置 FailedPermanent 记录
  list-failed                 列出 FailedPermanent 记录
  show-cursors                显示各链观察游标
  show-config [env]           显示配置摘要（development / staging / production / test）
  validate-config [env]       校验配置"""


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print(_USAGE)
        sys.exit(1)

    command = sys.argv[1]
    argument = sys.argv[2] if len(sys.argv) > 2 else None

    if command == "reset-message":
        if argument is None:
            print("缺少参数: message_id")
            sys.exit(1)
        ok = asyncio.run(reset_message(argument))
        sys.exit(0 if ok else 2)
    elif command == "list-failed":
        asyncio.run(list_failed())
    elif command == "show-cursors":
        asyncio.run(show_cursors())
    elif command == "show-config":
        sys.exit(0 if show_config(argument) else 1)
    elif command == "validate-config":
        sys.exit(0 if check_config(argument) else 1)
    else:
        print(f"未知命令: {command}")
        print(_USAGE)
        sys.exit(1)


def _load_for(environment: str | None) -> RelayerConfig:
    """按指定环境加载配置，其余覆盖仍取进程环境变量"""
    environ = dict(os.environ)
    if environment:
        environ["BRICKVAULT_ENV"] = environment
    return load_relayer_config(environ)


def _load_problems(e: ConfigValidationError | ValidationError) -> list[str]:
    if isinstance(e, ConfigValidationError):
        return e.problems
    return [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in e.errors()
    ]


def show_config(environment: str | None = None) -> bool:
    """打印配置摘要，配置无法加载时返回 False"""
    try:
        config = _load_for(environment)
    except (ConfigValidationError, ValidationError) as e:
        for problem in _load_problems(e):
            print(f"  - {problem}")
        return False

    print(f"BrickVault relayer 配置 ({config.environment})")
    print(json.dumps(config_summary(config), indent=2, ensure_ascii=False, default=str))
    return True


def check_config(environment: str | None = None) -> bool:
    """校验配置并打印问题列表

    Returns:
        无问题时为 True
    """
    try:
        config = _load_for(environment)
    except (ConfigValidationError, ValidationError) as e:
        problems = _load_problems(e)
        label = environment or os.environ.get("BRICKVAULT_ENV", "development")
    else:
        problems = validate_config(config)
        label = config.environment

    print(f"配置校验 ({label})")
    if not problems:
        print("配置有效")
        return True
    print(f"发现 {len(problems)} 个问题:")
    for problem in problems:
        print(f"  - {problem}")
    return False


async def reset_message(message_id: str) -> bool:
    """重置单条 FailedPermanent 记录，下一轮重试调度会重新派发"""
    from .store import create_store_group

    db_path = load_relayer_config().storage.db_path
    print(f"数据库路径: {db_path}")
    store_group = await create_store_group(db_path)

    try:
        record = await store_group.dispatch_store.get(message_id)
        if record is None:
            print(f"记录不存在: {message_id}")
            return False
        if not await store_group.dispatch_store.reset(message_id):
            print(f"记录状态为 {record.status}，仅 FAILED_PERMANENT 可重置")
            return False
        print(f"已重置 {message_id}（原因: {record.last_error}）")
        return True
    finally:
        await store_group.conn.close()


async def list_failed() -> None:
    from .store import create_store_group

    store_group = await create_store_group(load_relayer_config().storage.db_path)
    try:
        records = await store_group.dispatch_store.list_records(
            DispatchStatus.FAILED_PERMANENT, limit=1000
        )
        for record in records:
            print(
                f"{record.message_id}  {record.kind}  property={record.property_id}  "
                f"amount={record.amount}  retries={record.retry_count}  {record.last_error}"
            )
        print(f"共 {len(records)} 条")
    finally:
        await store_group.conn.close()


async def show_cursors() -> None:
    from .store import create_store_group

    store_group = await create_store_group(load_relayer_config().storage.db_path)
    try:
        for cursor in await store_group.cursor_store.list_cursors():
            print(f"{cursor.chain}: {cursor.block_height}")
    finally:
        await store_group.conn.close()


if __name__ == "__main__":
    main()
