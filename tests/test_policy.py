"""
执行策略测试
"""
import asyncio
import pytest

from botflow.core.policy import (
    MAX_NODE_RETRY_COUNT, MAX_NODE_RETRY_DELAY_MS, MAX_NODE_TIMEOUT_MS,
    ExecutionPolicy, RetryBackoff, resolve_policy, retry_delay_ms,
    retry_error_message, run_with_policy, strip_policy_params
)
from botflow.exceptions import NodeError
from botflow.models.execution import ActionExecutionResult


class TestResolvePolicy:
    """策略解析测试类"""

    def test_defaults(self):
        policy = resolve_policy({})
        assert policy == ExecutionPolicy()
        assert policy.total_attempts == 1

    def test_parses_and_bounds_values(self):
        """测试数值解析与上限"""
        policy = resolve_policy({
            "timeout_ms": "1500",
            "retry_count": 20,
            "retry_delay_ms": 10 ** 9,
            "retry_backoff": "Exponential",
        })
        assert policy.timeout_ms == 1500
        assert policy.retry_count == MAX_NODE_RETRY_COUNT
        assert policy.retry_delay_ms == MAX_NODE_RETRY_DELAY_MS
        assert policy.retry_backoff == RetryBackoff.EXPONENTIAL

    def test_invalid_values_disable(self):
        policy = resolve_policy({"timeout_ms": "soon", "retry_count": -2, "retry_delay_ms": float("inf")})
        assert policy.timeout_ms == 0
        assert policy.retry_count == 0
        assert policy.retry_delay_ms == 0

    def test_reserved_keys_take_precedence(self):
        policy = resolve_policy({"__timeout_ms": 100, "timeout_ms": 200, "timeout": 300})
        assert policy.timeout_ms == 100

    def test_action_limits_fallback(self):
        """测试参数未设置超时时使用动作限制"""
        assert resolve_policy({}, {"timeout_ms": 250}).timeout_ms == 250
        assert resolve_policy({"timeout": 10 ** 9}, {"timeout_ms": 250}).timeout_ms == MAX_NODE_TIMEOUT_MS

    def test_strip_policy_params(self):
        params = {"retry_count": 1, "__timeout_ms": 5, "value": "x"}
        assert strip_policy_params(params) == {"value": "x"}


class TestRetryDelay:
    """重试延迟测试类"""

    def test_fixed(self):
        policy = ExecutionPolicy(retry_count=3, retry_delay_ms=100)
        assert [retry_delay_ms(policy, attempt) for attempt in (1, 2, 3)] == [100, 100, 100]

    def test_exponential_capped(self):
        policy = ExecutionPolicy(retry_count=3, retry_delay_ms=100, retry_backoff=RetryBackoff.EXPONENTIAL)
        assert [retry_delay_ms(policy, attempt) for attempt in (1, 2, 3)] == [100, 200, 400]
        assert retry_delay_ms(policy, 20) == MAX_NODE_RETRY_DELAY_MS

    def test_error_message(self):
        assert retry_error_message("boom", 1) == "boom"
        assert retry_error_message("boom", 3) == "boom (after 3 attempts)"
        assert retry_error_message("", 1) == "unknown error"


class TestRunWithPolicy:
    """按策略执行测试类"""

    @pytest.mark.asyncio
    async def test_retry_until_success(self):
        """测试失败后重试成功"""
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise RuntimeError("temporary")
            return ActionExecutionResult(variables={"ok": True})

        result = await run_with_policy(flaky, ExecutionPolicy(retry_count=2), "n1")
        assert result.success
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_exhausted_exception_raises_node_error(self):
        async def broken():
            raise RuntimeError("boom")

        with pytest.raises(NodeError) as exc_info:
            await run_with_policy(broken, ExecutionPolicy(retry_count=1), "n1")

        assert str(exc_info.value) == "boom (after 2 attempts)"
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.cause, RuntimeError)

    @pytest.mark.asyncio
    async def test_exhausted_failure_result_is_returned(self):
        """测试失败结果在重试耗尽后返回"""
        async def failing():
            return ActionExecutionResult.failure("bad input")

        result = await run_with_policy(failing, ExecutionPolicy(retry_count=1), "n1")
        assert not result.success
        assert result.error == "bad input (after 2 attempts)"

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow():
            await asyncio.sleep(1)
            return ActionExecutionResult()

        with pytest.raises(NodeError) as exc_info:
            await run_with_policy(slow, ExecutionPolicy(timeout_ms=20), "n1")

        assert "timeout after 20ms" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_sync_results_pass_through(self):
        result = await run_with_policy(lambda: ActionExecutionResult(new_text="hi"), ExecutionPolicy(), "n1")
        assert result.new_text == "hi"
