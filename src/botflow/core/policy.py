"""
节点执行策略：超时与重试
"""
import asyncio
import inspect
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..exceptions import NodeError, NodeTimeoutError
from ..models.execution import ActionExecutionResult


logger = logging.getLogger(__name__)

MAX_NODE_TIMEOUT_MS = 5 * 60 * 1000
MAX_NODE_RETRY_COUNT = 10
MAX_NODE_RETRY_DELAY_MS = 60 * 1000

TIMEOUT_KEYS = ("__timeout_ms", "timeout_ms", "timeout")
RETRY_COUNT_KEYS = ("__retry_count", "retry_count")
RETRY_DELAY_KEYS = ("__retry_delay_ms", "retry_delay_ms")
RETRY_BACKOFF_KEYS = ("__retry_backoff", "retry_backoff")
POLICY_KEYS = TIMEOUT_KEYS + RETRY_COUNT_KEYS + RETRY_DELAY_KEYS + RETRY_BACKOFF_KEYS


class RetryBackoff(Enum):
    """重试退避方式"""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass
class ExecutionPolicy:
    """节点执行策略"""
    timeout_ms: int = 0
    retry_count: int = 0
    retry_delay_ms: int = 0
    retry_backoff: RetryBackoff = RetryBackoff.FIXED

    @property
    def total_attempts(self) -> int:
        return self.retry_count + 1


def _first_present(params: Dict[str, Any], keys) -> Any:
    for key in keys:
        if params.get(key) is not None:
            return params[key]
    return None


def _bounded_int(raw: Any, upper: int) -> int:
    """非数值、非有限或非正数取 0，其余截断后限制上界"""
    if raw is None or isinstance(raw, bool):
        number = float(raw) if isinstance(raw, bool) else math.nan
    else:
        try:
            number = float(str(raw).strip()) if isinstance(raw, str) else float(raw)
        except (TypeError, ValueError):
            number = math.nan
    if not math.isfinite(number) or number <= 0:
        return 0
    return min(int(number), upper)


def resolve_policy(params: Dict[str, Any], limits: Optional[Dict[str, Any]] = None) -> ExecutionPolicy:
    """从节点参数解析执行策略，参数中未设置超时时使用动作自身的限制"""
    timeout_raw = _first_present(params, TIMEOUT_KEYS)
    if timeout_raw is None and limits:
        timeout_raw = limits.get("timeout_ms", limits.get("timeoutMs"))

    backoff_raw = str(_first_present(params, RETRY_BACKOFF_KEYS) or "fixed").strip().lower()

    return ExecutionPolicy(
        timeout_ms=_bounded_int(timeout_raw, MAX_NODE_TIMEOUT_MS),
        retry_count=_bounded_int(_first_present(params, RETRY_COUNT_KEYS), MAX_NODE_RETRY_COUNT),
        retry_delay_ms=_bounded_int(_first_present(params, RETRY_DELAY_KEYS), MAX_NODE_RETRY_DELAY_MS),
        retry_backoff=RetryBackoff.EXPONENTIAL if backoff_raw == "exponential" else RetryBackoff.FIXED,
    )


def strip_policy_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """去掉策略相关的保留参数"""
    return {key: value for key, value in params.items() if key not in POLICY_KEYS}


def retry_delay_ms(policy: ExecutionPolicy, attempt: int) -> int:
    """计算第 attempt 次失败后的等待时间"""
    if policy.retry_delay_ms <= 0:
        return 0
    if policy.retry_backoff == RetryBackoff.EXPONENTIAL:
        multiplier = 2 ** max(0, attempt - 1)
        return min(policy.retry_delay_ms * multiplier, MAX_NODE_RETRY_DELAY_MS)
    return policy.retry_delay_ms


def retry_error_message(error: str, attempts: int) -> str:
    message = str(error or "unknown error")
    if attempts <= 1:
        return message
    return f"{message} (after {attempts} attempts)"


async def _call_once(call: Callable[[], Any], policy: ExecutionPolicy, node_id: str) -> ActionExecutionResult:
    result = call()
    if inspect.isawaitable(result):
        if policy.timeout_ms > 0:
            try:
                result = await asyncio.wait_for(result, timeout=policy.timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise NodeTimeoutError(node_id, policy.timeout_ms)
        else:
            result = await result
    return result


async def run_with_policy(
    call: Callable[[], Awaitable[ActionExecutionResult]],
    policy: ExecutionPolicy,
    node_id: str
) -> ActionExecutionResult:
    """按策略执行：每次尝试可带超时，失败后按退避等待并重试

    处理器返回的失败结果在重试耗尽后原样返回（错误信息附带尝试次数）；
    抛出的异常在重试耗尽后包装为 NodeError 抛出。
    """
    total_attempts = policy.total_attempts
    last_error = ""

    for attempt in range(1, total_attempts + 1):
        try:
            result = await _call_once(call, policy, node_id)
            if result.success:
                if attempt > 1:
                    logger.info(f"Node {node_id} succeeded on attempt {attempt}")
                return result
            last_error = str(result.error or f"node {node_id} failed")
            if attempt >= total_attempts:
                result.error = retry_error_message(last_error, attempt)
                return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = str(e) or type(e).__name__
            if attempt >= total_attempts:
                raise NodeError(node_id, retry_error_message(last_error, attempt), cause=e, attempts=attempt)

        delay = retry_delay_ms(policy, attempt)
        logger.warning(
            f"Node {node_id} attempt {attempt}/{total_attempts} failed: {last_error}; "
            f"retrying in {delay}ms"
        )
        if delay > 0:
            await asyncio.sleep(delay / 1000)

    return ActionExecutionResult.failure(retry_error_message(last_error, total_attempts))
