"""
FastAPI 后端入口 - 提供音频转录、四项分析、历史记录等 REST API。

主要接口：
- POST   /api/transcribe   上传音频并转录（带说话人分段）
- POST   /api/generate     上传音频，转录后发起情感 / 类型 / 合作 / 歌词分析
- GET    /api/history      获取历史记录
- POST   /api/history      手动追加一条历史记录
- DELETE /api/history      清空历史记录
- GET    /                 Web UI 首页

两个上传接口都接收 multipart/form-data 中的 audio 字段，阻塞直到上游
任务结束。错误统一返回 {"message": str}，上游错误额外带 kind 字段。
"""

import asyncio
import os
import threading
from typing import Optional

from fastapi import FastAPI, File, UploadFile
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from app.analysis import AnalysisExtractor
from app.assembly_client import AssemblyClient
from app.config import Settings, load_settings
from app.errors import AssemblyError, ConfigurationError, TranscriptionFailed
from app.history import HistoryFormatError, HistoryStore, JsonFileHistoryStore, MemoryHistoryStore
from app.logger import get_logger
from app.models import Transcript, Utterance

logger = get_logger("main")

# ----- 路径配置 -----
STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "static")

MISSING_AUDIO_MESSAGE = "Audio file is required."

# ----- FastAPI 应用 -----
app = FastAPI(
    title="Audio Lyrics Studio",
    description="上传音频，获得带说话人分段的转录、情感 / 类型分析和生成歌词",
    version="1.0.0",
)

# ----- 全局单例 -----
# 延迟初始化，首次请求时按当前环境变量创建
_settings: Optional[Settings] = None
_client: Optional[AssemblyClient] = None
_history_store: Optional[HistoryStore] = None


def _get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def _get_client() -> AssemblyClient:
    """
    获取或创建全局 AssemblyClient 单例。

    Raises:
        ConfigurationError: 未配置 API Key
    """
    global _client
    if _client is None:
        settings = _get_settings()
        if not settings.api_key:
            raise ConfigurationError("ASSEMBLYAI_API_KEY is not configured.")
        _client = AssemblyClient(
            api_key=settings.api_key,
            base_url=settings.base_url,
            request_timeout_s=settings.request_timeout_s,
            poll_interval_s=settings.poll_interval_s,
            max_poll_time_s=settings.max_poll_time_s,
        )
    return _client


def _get_extractor() -> AnalysisExtractor:
    settings = _get_settings()
    return AnalysisExtractor(
        _get_client(),
        final_model=settings.final_model,
        analysis_format=settings.analysis_format,
    )


def _get_history_store() -> HistoryStore:
    """获取或创建全局历史记录存储；HISTORY_PATH 为空时使用内存存储。"""
    global _history_store
    if _history_store is None:
        settings = _get_settings()
        if settings.history_path:
            _history_store = JsonFileHistoryStore(settings.history_path, capacity=settings.history_capacity)
        else:
            logger.warning("未配置 HISTORY_PATH，历史记录仅保存在内存中")
            _history_store = MemoryHistoryStore(capacity=settings.history_capacity)
    return _history_store


# ----- 请求/响应模型 -----

class UtteranceModel(BaseModel):
    """说话人分段"""
    speaker: str
    text: str


class HistoryAppendRequest(BaseModel):
    """手动追加历史记录的请求"""
    fileName: str = Field(..., min_length=1)
    utterances: Optional[list[UtteranceModel]] = None
    lyrics: Optional[str] = None


# ----- 工具函数 -----

def _message(status_code: int, message: str, kind: Optional[str] = None) -> JSONResponse:
    body = {"message": message}
    if kind:
        body["kind"] = kind
    return JSONResponse(body, status_code=status_code)


def _error_response(e: Exception) -> JSONResponse:
    """把异常转换为 500 响应；上游错误保留原文并附带 kind。"""
    if isinstance(e, TranscriptionFailed):
        return _message(500, f"Transcription failed: {e.message}", e.kind)
    if isinstance(e, AssemblyError):
        return _message(500, e.message, e.kind)
    return _message(500, str(e) or e.__class__.__name__, "internal")


async def _read_audio(audio: Optional[UploadFile]) -> Optional[bytes]:
    """读取上传的音频内容；未上传 audio 字段时返回 None。不校验内容大小。"""
    if audio is None:
        return None
    return await audio.read()


async def _run_blocking(func, *args, **kwargs):
    """
    在线程池中执行阻塞的上游调用，并接上取消信号。

    请求协程被取消时（例如客户端断开），设置 cancel 事件，
    让正在轮询的线程尽快退出。
    """
    cancel = threading.Event()
    try:
        return await asyncio.to_thread(func, *args, cancel=cancel, **kwargs)
    except asyncio.CancelledError:
        cancel.set()
        logger.warning("请求已取消，通知上游调用停止")
        raise


def _record_history(file_name: str, transcript: Transcript, lyrics: Optional[str] = None) -> None:
    """追加历史记录；写入失败只记录日志，不影响本次请求结果。"""
    try:
        _get_history_store().record(file_name, utterances=transcript.utterances, lyrics=lyrics)
    except (OSError, HistoryFormatError) as e:
        logger.error("写入历史记录失败: %s", e, exc_info=True)


# ----- API 接口 -----

@app.post("/api/transcribe")
async def transcribe_audio(audio: Optional[UploadFile] = File(None)):
    """
    上传音频并转录。

    音频原样上传到 AssemblyAI，请求带说话人标签的转录结果，
    阻塞等待任务结束后返回全文和说话人分段。

    Args:
        audio: 上传的音频文件（不校验格式、大小、时长）

    Returns:
        dict: {'text': str, 'utterances': [{'speaker': str, 'text': str}]}
    """
    content = await _read_audio(audio)
    if content is None:
        return _message(400, MISSING_AUDIO_MESSAGE)

    file_name = audio.filename or "audio"
    logger.info("收到转录请求: file=%s, size=%.1fKB", file_name, len(content) / 1024)

    try:
        client = _get_client()
        transcript = await _run_blocking(client.transcribe, content)
    except Exception as e:
        logger.error("转录失败: file=%s, %s", file_name, e, exc_info=True)
        return _error_response(e)

    _record_history(file_name, transcript)
    logger.info("转录完成: file=%s, transcript_id=%s", file_name, transcript.id)
    return transcript.to_dict()


@app.post("/api/generate")
async def generate_analysis(audio: Optional[UploadFile] = File(None)):
    """
    上传音频，转录后发起四项分析。

    流程：上传 → 转录（带说话人标签）→ LeMUR 分析 → 按标签解析。
    解析失败不视为错误，缺失字段在 analysis 中不出现，
    diagnostics 说明缺了哪些字段、哪些行没有匹配。

    Args:
        audio: 上传的音频文件

    Returns:
        dict: {'transcription': {...}, 'analysis': {...}, 'diagnostics': {...}}
    """
    content = await _read_audio(audio)
    if content is None:
        return _message(400, MISSING_AUDIO_MESSAGE)

    file_name = audio.filename or "audio"
    logger.info("收到分析请求: file=%s, size=%.1fKB", file_name, len(content) / 1024)

    try:
        client = _get_client()
        transcript = await _run_blocking(client.transcribe, content)
        outcome = await _run_blocking(_get_extractor().extract, transcript.id)
    except Exception as e:
        logger.error("处理音频失败: file=%s, %s", file_name, e, exc_info=True)
        return _error_response(e)

    _record_history(file_name, transcript, lyrics=outcome.analysis.lyrics)
    logger.info(
        "分析完成: file=%s, transcript_id=%s, status=%s",
        file_name, transcript.id, outcome.status,
    )
    return {
        "transcription": transcript.to_dict(),
        "analysis": outcome.analysis.to_dict(),
        "diagnostics": outcome.diagnostics(),
    }


@app.get("/api/history")
async def list_history():
    """返回全部历史记录，最早的在前。"""
    try:
        items = _get_history_store().list()
    except (OSError, HistoryFormatError) as e:
        logger.error("读取历史记录失败: %s", e)
        return _message(500, str(e), "history")
    return {"items": [item.to_dict() for item in items]}


@app.post("/api/history")
async def append_history(request: HistoryAppendRequest):
    """
    手动追加一条历史记录。

    id 和 timestamp 由服务端生成。

    Returns:
        dict: 写入后的记录
    """
    utterances = None
    if request.utterances is not None:
        utterances = [Utterance(speaker=u.speaker, text=u.text) for u in request.utterances]
    try:
        item = _get_history_store().record(request.fileName, utterances=utterances, lyrics=request.lyrics)
    except (OSError, HistoryFormatError) as e:
        logger.error("追加历史记录失败: %s", e)
        return _message(500, str(e), "history")
    return item.to_dict()


@app.delete("/api/history")
async def clear_history():
    """清空历史记录。"""
    try:
        _get_history_store().clear()
    except OSError as e:
        logger.error("清空历史记录失败: %s", e)
        return _message(500, str(e), "history")
    return {"status": "ok"}


# ----- 静态文件和首页 -----

if os.path.isdir(STATIC_DIR):
    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")


@app.get("/")
async def index():
    """返回 Web UI 首页"""
    index_path = os.path.join(STATIC_DIR, "index.html")
    if not os.path.isfile(index_path):
        return HTMLResponse("<h1>Audio Lyrics Studio</h1><p>前端文件未找到</p>", status_code=500)
    return FileResponse(index_path)


# ----- 启动入口 -----

if __name__ == "__main__":
    import uvicorn
    logger.info("启动 Audio Lyrics Studio 服务...")
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
