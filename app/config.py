"""
配置模块 - 从环境变量读取服务配置。

所有配置集中在不可变的 Settings 中，由 load_settings() 在运行时构造。
数值型变量解析失败时退回默认值，不会因为一个拼写错误导致服务无法启动。
"""

import os
from dataclasses import dataclass
from typing import Optional

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

DEFAULT_BASE_URL = "https://api.assemblyai.com"
DEFAULT_FINAL_MODEL = "anthropic/claude-3-5-sonnet"
DEFAULT_HISTORY_PATH = os.path.join(PROJECT_ROOT, "data", "history.json")

# 分析结果的两种输出格式：原始四行文本 / 结构化 JSON
ANALYSIS_FORMATS = ("prose", "json")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    return v if v not in (None, "") else default


def _getenv_int(name: str, default: int) -> int:
    v = _getenv(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    v = _getenv(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """
    服务运行配置。

    Attributes:
        api_key: AssemblyAI API Key（未配置时为 None，调用上游时报错）
        base_url: AssemblyAI REST 接口地址
        final_model: LeMUR 使用的大模型
        analysis_format: 'prose'（四行文本）或 'json'（结构化输出）
        request_timeout_s: 单次 HTTP 请求超时（秒）
        poll_interval_s: 转录任务轮询间隔（秒）
        max_poll_time_s: 转录任务最长等待时间（秒）
        history_path: 历史记录 JSON 文件路径，为 None 时使用内存存储
        history_capacity: 历史记录最大条数，超出后淘汰最早的记录
    """
    api_key: Optional[str]
    base_url: str = DEFAULT_BASE_URL
    final_model: str = DEFAULT_FINAL_MODEL
    analysis_format: str = "prose"
    request_timeout_s: float = 30.0
    poll_interval_s: float = 3.0
    max_poll_time_s: float = 600.0
    history_path: Optional[str] = DEFAULT_HISTORY_PATH
    history_capacity: int = 500


def load_settings() -> Settings:
    """从环境变量构造 Settings。"""
    analysis_format = (_getenv("ANALYSIS_FORMAT", "prose") or "prose").strip().lower()
    if analysis_format not in ANALYSIS_FORMATS:
        analysis_format = "prose"

    # HISTORY_PATH 显式设为空字符串表示只用内存存储
    raw_history_path = os.getenv("HISTORY_PATH")
    if raw_history_path is None:
        history_path: Optional[str] = DEFAULT_HISTORY_PATH
    else:
        history_path = raw_history_path.strip() or None

    return Settings(
        api_key=_getenv("ASSEMBLYAI_API_KEY") or _getenv("ASSEMBLY_API"),
        base_url=(_getenv("ASSEMBLYAI_BASE_URL", DEFAULT_BASE_URL) or DEFAULT_BASE_URL).rstrip("/"),
        final_model=_getenv("LEMUR_FINAL_MODEL", DEFAULT_FINAL_MODEL) or DEFAULT_FINAL_MODEL,
        analysis_format=analysis_format,
        request_timeout_s=_getenv_float("REQUEST_TIMEOUT_S", 30.0),
        poll_interval_s=_getenv_float("POLL_INTERVAL_S", 3.0),
        max_poll_time_s=_getenv_float("MAX_POLL_TIME_S", 600.0),
        history_path=history_path,
        history_capacity=max(1, _getenv_int("HISTORY_CAPACITY", 500)),
    )
