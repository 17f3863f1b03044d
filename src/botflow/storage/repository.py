"""
存储仓库接口定义
"""
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any
from datetime import datetime
from pathlib import Path
import json
import logging
import re

import aiofiles

from ..exceptions import PersistenceError
from ..models.workflow import Workflow
from ..models.execution import PendingExecution


logger = logging.getLogger(__name__)

# 以下划线开头的文件名留给索引文件
EXECUTION_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]*")


class WorkflowRepository(ABC):
    """工作流存储仓库接口"""

    @abstractmethod
    async def save(self, workflow: Workflow) -> str:
        """保存工作流"""
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """获取工作流"""
        pass

    @abstractmethod
    async def list(self, offset: int = 0, limit: int = 100) -> List[Workflow]:
        """列出工作流"""
        pass

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """删除工作流"""
        pass


class ExecutionStore(ABC):
    """挂起执行的存储接口，按不透明的执行ID存取"""

    @abstractmethod
    async def save(self, execution_id: str, pending: PendingExecution) -> str:
        """保存挂起的执行"""
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[PendingExecution]:
        """获取挂起的执行"""
        pass

    @abstractmethod
    async def delete(self, execution_id: str) -> bool:
        """删除挂起的执行"""
        pass

    @abstractmethod
    async def bind_await(self, chat_id: str, user_id: Optional[str], execution_id: str):
        """记录某个会话正在等待输入的执行"""
        pass

    @abstractmethod
    async def find_await(self, chat_id: str, user_id: Optional[str]) -> Optional[str]:
        """查找会话正在等待输入的执行ID"""
        pass

    @abstractmethod
    async def release_await(self, chat_id: str, user_id: Optional[str]):
        """解除等待映射"""
        pass


def await_key(chat_id: str, user_id: Optional[str]) -> str:
    return f"{chat_id}:{user_id or '*'}"


# 内存实现（用于测试）
class InMemoryWorkflowRepository(WorkflowRepository):
    """内存工作流仓库实现"""

    def __init__(self):
        self.workflows: Dict[str, Workflow] = {}

    async def save(self, workflow: Workflow) -> str:
        self.workflows[workflow.id] = workflow
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        return self.workflows.get(workflow_id)

    async def list(self, offset: int = 0, limit: int = 100) -> List[Workflow]:
        workflows = list(self.workflows.values())
        return workflows[offset:offset + limit]

    async def delete(self, workflow_id: str) -> bool:
        if workflow_id in self.workflows:
            del self.workflows[workflow_id]
            return True
        return False


class InMemoryExecutionStore(ExecutionStore):
    """内存执行存储实现，保存序列化后的副本"""

    def __init__(self):
        self.executions: Dict[str, Dict[str, Any]] = {}
        self.awaiting: Dict[str, str] = {}

    async def save(self, execution_id: str, pending: PendingExecution) -> str:
        self.executions[execution_id] = pending.to_dict()
        return execution_id

    async def get(self, execution_id: str) -> Optional[PendingExecution]:
        data = self.executions.get(execution_id)
        return PendingExecution.from_dict(data) if data is not None else None

    async def delete(self, execution_id: str) -> bool:
        if execution_id in self.executions:
            del self.executions[execution_id]
            return True
        return False

    async def bind_await(self, chat_id: str, user_id: Optional[str], execution_id: str):
        self.awaiting[await_key(chat_id, user_id)] = execution_id

    async def find_await(self, chat_id: str, user_id: Optional[str]) -> Optional[str]:
        return self.awaiting.get(await_key(chat_id, user_id))

    async def release_await(self, chat_id: str, user_id: Optional[str]):
        self.awaiting.pop(await_key(chat_id, user_id), None)


class FileExecutionStore(ExecutionStore):
    """文件执行存储：每个执行一个 JSON 文件，等待映射保存在 _awaiting.json"""

    AWAIT_INDEX_FILE = "_awaiting.json"

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, execution_id: str) -> Path:
        """执行 id 直接作为文件名"""
        if not EXECUTION_ID_RE.fullmatch(str(execution_id or "")):
            raise PersistenceError(f"Invalid execution id: {execution_id!r}")
        return self.base_path / f"{execution_id}.json"

    async def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                return json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}")

    async def _write_json(self, path: Path, data: Dict[str, Any]):
        try:
            async with aiofiles.open(path, 'w', encoding='utf-8') as f:
                await f.write(json.dumps(data, ensure_ascii=False, indent=2, default=str))
        except (OSError, TypeError) as e:
            raise PersistenceError(f"Failed to write {path}: {e}")

    async def save(self, execution_id: str, pending: PendingExecution) -> str:
        data = pending.to_dict()
        data["saved_at"] = datetime.utcnow().isoformat()
        await self._write_json(self._path(execution_id), data)
        logger.debug(f"Saved pending execution {execution_id}")
        return execution_id

    async def get(self, execution_id: str) -> Optional[PendingExecution]:
        data = await self._read_json(self._path(execution_id))
        return PendingExecution.from_dict(data) if data is not None else None

    async def delete(self, execution_id: str) -> bool:
        path = self._path(execution_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    async def _await_index(self) -> Dict[str, str]:
        return await self._read_json(self.base_path / self.AWAIT_INDEX_FILE) or {}

    async def bind_await(self, chat_id: str, user_id: Optional[str], execution_id: str):
        index = await self._await_index()
        index[await_key(chat_id, user_id)] = execution_id
        await self._write_json(self.base_path / self.AWAIT_INDEX_FILE, index)

    async def find_await(self, chat_id: str, user_id: Optional[str]) -> Optional[str]:
        index = await self._await_index()
        return index.get(await_key(chat_id, user_id))

    async def release_await(self, chat_id: str, user_id: Optional[str]):
        index = await self._await_index()
        if index.pop(await_key(chat_id, user_id), None) is not None:
            await self._write_json(self.base_path / self.AWAIT_INDEX_FILE, index)
