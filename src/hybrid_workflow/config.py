"""
引擎配置
"""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


DEFAULT_RETRYABLE_ERRORS = [
    "timeout",
    "timed out",
    "ECONNRESET",
    "ECONNREFUSED",
    "ENOTFOUND",
    "connection",
    "network",
    "rate limit",
    "502",
    "503",
    "504",
]

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


@dataclass
class EngineSettings:
    """引擎可调参数"""
    max_concurrent_runs: int = 10
    node_timeout: float = 300.0  # 秒
    max_concurrency: int = 10  # 每一波最多并发节点数

    # 熔断器
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 60.0
    circuit_sweep_interval: float = 3600.0
    circuit_max_open: float = 3600.0

    # 重试
    retry_base_delay_ms: int = 1000
    retryable_errors: List[str] = field(default_factory=lambda: list(DEFAULT_RETRYABLE_ERRORS))

    loop_max_iterations: int = 100
    human_input_timeout: float = 300.0

    # 外部服务
    tool_service_url: Optional[str] = None
    agent_service_url: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "EngineSettings":
        """从环境变量加载配置"""
        if dotenv:
            load_dotenv()

        return cls(
            max_concurrent_runs=_env_int("WORKFLOW_MAX_CONCURRENT_RUNS", 10),
            node_timeout=_env_float("WORKFLOW_NODE_TIMEOUT", 300.0),
            max_concurrency=_env_int("WORKFLOW_MAX_CONCURRENCY", 10),
            circuit_failure_threshold=_env_int("CIRCUIT_FAILURE_THRESHOLD", 5),
            circuit_recovery_timeout=_env_float("CIRCUIT_RECOVERY_TIMEOUT", 60.0),
            circuit_sweep_interval=_env_float("CIRCUIT_SWEEP_INTERVAL", 3600.0),
            circuit_max_open=_env_float("CIRCUIT_MAX_OPEN", 3600.0),
            retry_base_delay_ms=_env_int("RETRY_BASE_DELAY_MS", 1000),
            loop_max_iterations=_env_int("LOOP_MAX_ITERATIONS", 100),
            human_input_timeout=_env_float("HUMAN_INPUT_TIMEOUT", 300.0),
            tool_service_url=os.getenv("TOOL_SERVICE_URL") or None,
            agent_service_url=os.getenv("AGENT_SERVICE_URL") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO"):
    """配置日志"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
