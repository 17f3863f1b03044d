"""
运行配置
"""
import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

DEFAULT_MAX_STEPS = 10000
DEFAULT_MAX_CALL_DEPTH = 16
DEFAULT_HTTP_TIMEOUT = 30


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"Ignoring invalid {name}={raw!r}")
        return default
    return value if value > 0 else default


@dataclass
class EngineSettings:
    """引擎设置"""
    max_steps: int = DEFAULT_MAX_STEPS
    max_call_depth: int = DEFAULT_MAX_CALL_DEPTH
    log_level: str = "INFO"
    store_path: Optional[str] = None
    preview: bool = False
    http_timeout: int = DEFAULT_HTTP_TIMEOUT

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "EngineSettings":
        """加载 .env 后从环境变量读取设置"""
        load_dotenv(dotenv_path)
        return cls(
            max_steps=_env_int("BOTFLOW_MAX_STEPS", DEFAULT_MAX_STEPS),
            max_call_depth=_env_int("BOTFLOW_MAX_CALL_DEPTH", DEFAULT_MAX_CALL_DEPTH),
            log_level=os.getenv("BOTFLOW_LOG_LEVEL", "INFO").upper(),
            store_path=os.getenv("BOTFLOW_STORE_PATH") or None,
            preview=os.getenv("BOTFLOW_PREVIEW", "false").lower() == "true",
            http_timeout=_env_int("BOTFLOW_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        )


def configure_logging(level: str = "INFO"):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT
    )
