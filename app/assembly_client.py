"""
AssemblyAI 云端转录与 LeMUR 分析模块。

通过 RESTful API 完成以下流程：
1. POST /v2/upload 上传原始音频字节，获得临时 upload_url
2. POST /v2/transcript 提交带说话人标签（speaker_labels）的转录任务
3. 轮询 GET /v2/transcript/{id} 直到 completed 或 error
4. POST /lemur/v3/generate/task 对转录结果发起一次大模型任务

每个请求都有独立的超时；轮询有总时长上限；调用方可传入
threading.Event 作为取消信号。失败统一抛出 app.errors 中的类型化异常。
"""

import threading
import time
from typing import Optional

import requests

from app.errors import (
    RequestCancelled,
    TranscriptionFailed,
    TransportError,
    UpstreamError,
    UpstreamTimeout,
)
from app.logger import get_logger
from app.models import Transcript, Utterance

logger = get_logger("assembly_client")

DEFAULT_BASE_URL = "https://api.assemblyai.com"

# 轮询配置
_POLL_INTERVAL_S = 3.0    # 轮询间隔（秒）
_MAX_POLL_TIME_S = 600.0  # 最大等待时间（秒）
_REQUEST_TIMEOUT_S = 30.0  # 单次请求超时（秒）


class AssemblyClient:
    """
    AssemblyAI 的同步 REST 客户端。

    完整流程：上传音频 → 提交转录任务 → 轮询等待 → （可选）LeMUR 分析。
    所有方法都是阻塞调用，在异步接口中应通过 asyncio.to_thread 执行。

    使用方式：
        client = AssemblyClient(api_key="xxx")
        transcript = client.transcribe(audio_bytes)
        reply = client.lemur_task([transcript.id], prompt="...")
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        request_timeout_s: float = _REQUEST_TIMEOUT_S,
        poll_interval_s: float = _POLL_INTERVAL_S,
        max_poll_time_s: float = _MAX_POLL_TIME_S,
        session: Optional[requests.Session] = None,
    ):
        """
        初始化客户端。

        Args:
            api_key: AssemblyAI API Key
            base_url: REST 接口地址
            request_timeout_s: 单次 HTTP 请求超时（秒）
            poll_interval_s: 转录任务轮询间隔（秒）
            max_poll_time_s: 转录任务最长等待时间（秒）
            session: 可注入的 requests.Session（测试时替换）
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.request_timeout_s = request_timeout_s
        self.poll_interval_s = poll_interval_s
        self.max_poll_time_s = max_poll_time_s
        self.session = session or requests.Session()
        self.session.headers.update({"authorization": api_key})
        logger.info(
            "AssemblyAI 客户端初始化完成（Key 长度=%d, 超时=%.0fs, 轮询上限=%.0fs）",
            len(api_key), request_timeout_s, max_poll_time_s,
        )

    # ----- 公开接口 -----

    def upload(self, data: bytes, cancel: Optional[threading.Event] = None) -> str:
        """
        上传原始音频字节到 AssemblyAI 临时存储。

        Args:
            data: 音频文件内容
            cancel: 取消信号

        Returns:
            str: 上游返回的 upload_url

        Raises:
            AssemblyError: 上传失败（具体类型见 app.errors）
        """
        logger.info("正在上传音频到 AssemblyAI: %.1fKB", len(data) / 1024)
        body = self._request(
            "POST", "/v2/upload",
            cancel=cancel,
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        upload_url = body.get("upload_url")
        if not upload_url:
            raise UpstreamError(f"上传未返回 upload_url: {body}")
        logger.info("音频上传成功")
        return upload_url

    def transcribe(self, data: bytes, cancel: Optional[threading.Event] = None) -> Transcript:
        """
        上传并转录音频，阻塞直到转录任务结束。

        Args:
            data: 音频文件内容
            cancel: 取消信号

        Returns:
            Transcript: 包含全文和说话人分段的转录结果

        Raises:
            TranscriptionFailed: 转录任务状态为 error（message 为上游原文）
            UpstreamTimeout: 超过最长等待时间
            RequestCancelled: 被取消
            AssemblyError: 其他上游 / 网络错误
        """
        audio_url = self.upload(data, cancel=cancel)

        body = self._request(
            "POST", "/v2/transcript",
            cancel=cancel,
            json={"audio_url": audio_url, "speaker_labels": True},
        )
        transcript_id = body.get("id")
        if not transcript_id:
            raise UpstreamError(f"提交转录任务未返回 id: {body}")
        logger.info("转录任务已提交: transcript_id=%s", transcript_id)

        result = self._wait_for_transcript(transcript_id, cancel)
        return self._parse_transcript(result)

    def lemur_task(
        self,
        transcript_ids: list[str],
        prompt: str,
        final_model: str,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        """
        对指定转录结果发起一次 LeMUR 自定义任务。

        Args:
            transcript_ids: 转录 ID 列表
            prompt: 任务提示词
            final_model: 使用的大模型
            cancel: 取消信号

        Returns:
            str: 大模型的回复原文
        """
        logger.info("发起 LeMUR 任务: model=%s, transcripts=%s", final_model, transcript_ids)
        body = self._request(
            "POST", "/lemur/v3/generate/task",
            cancel=cancel,
            json={
                "transcript_ids": list(transcript_ids),
                "prompt": prompt,
                "final_model": final_model,
            },
        )
        response = body.get("response")
        if not isinstance(response, str):
            raise UpstreamError(f"LeMUR 未返回文本结果: {body}")
        logger.info("LeMUR 任务完成: request_id=%s, 回复长度=%d", body.get("request_id"), len(response))
        return response

    # ----- 内部实现 -----

    def _request(
        self,
        method: str,
        path: str,
        cancel: Optional[threading.Event] = None,
        **kwargs,
    ) -> dict:
        """
        发送一次 HTTP 请求并返回 JSON 结果，把 requests 的异常映射为类型化异常。

        Raises:
            RequestCancelled: 发送前已被取消
            UpstreamTimeout: 请求超时
            TransportError: 连接失败等网络错误
            UpstreamError: 非 2xx 响应或响应体不是 JSON 对象
        """
        _check_cancelled(cancel)
        url = f"{self.base_url}{path}"

        try:
            resp = self.session.request(method, url, timeout=self.request_timeout_s, **kwargs)
        except requests.Timeout as e:
            raise UpstreamTimeout(f"请求超时 ({self.request_timeout_s:.0f}s): {method} {path}") from e
        except requests.RequestException as e:
            raise TransportError(f"请求失败: {method} {path}: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = None

        if resp.status_code >= 400:
            message = body.get("error") if isinstance(body, dict) else None
            raise UpstreamError(message or f"HTTP {resp.status_code}: {resp.text}", status_code=resp.status_code)

        if not isinstance(body, dict):
            raise UpstreamError(f"无法解析的响应: HTTP {resp.status_code}, {resp.text[:200]}")
        return body

    def _wait_for_transcript(self, transcript_id: str, cancel: Optional[threading.Event]) -> dict:
        """
        轮询等待转录任务完成。

        AssemblyAI 的转录是异步任务模式：
        - 提交后状态为 queued（排队中）
        - 开始处理后状态为 processing
        - 处理结束为 completed 或 error

        网络抖动导致的单次查询失败会在总时长内重试；上游明确返回的
        4xx 错误直接抛出。

        Raises:
            TranscriptionFailed: 任务状态为 error
            UpstreamTimeout: 超过 max_poll_time_s
            RequestCancelled: 被取消
        """
        path = f"/v2/transcript/{transcript_id}"
        start_time = time.monotonic()
        last_status = ""

        while True:
            elapsed = time.monotonic() - start_time
            if elapsed > self.max_poll_time_s:
                raise UpstreamTimeout(
                    f"转录任务超时 ({self.max_poll_time_s:.0f}s): transcript_id={transcript_id}"
                )

            try:
                body = self._request("GET", path, cancel=cancel)
            except (TransportError, UpstreamTimeout) as e:
                logger.warning("查询转录状态失败: %s (将重试)", e)
                self._sleep(cancel)
                continue
            except UpstreamError as e:
                if e.status_code is not None and e.status_code >= 500:
                    logger.warning("查询转录状态异常: HTTP %d (将重试)", e.status_code)
                    self._sleep(cancel)
                    continue
                raise

            status = body.get("status", "unknown")

            # 状态变化时记录日志
            if status != last_status:
                logger.info(
                    "转录状态: %s -> %s (已等待 %.1fs)",
                    last_status or "初始", status, elapsed,
                )
                last_status = status

            if status == "completed":
                logger.info("转录任务完成: 耗时 %.1fs", elapsed)
                return body

            if status == "error":
                error = body.get("error") or "未知原因"
                logger.error("转录任务失败: %s", error)
                raise TranscriptionFailed(error)

            # queued 或 processing，继续等待
            self._sleep(cancel)

    def _sleep(self, cancel: Optional[threading.Event]) -> None:
        """等待一个轮询间隔；等待期间收到取消信号立即返回并抛出。"""
        if cancel is None:
            time.sleep(self.poll_interval_s)
            return
        if cancel.wait(self.poll_interval_s):
            raise RequestCancelled("请求已取消")

    @staticmethod
    def _parse_transcript(body: dict) -> Transcript:
        """把 /v2/transcript 的完成响应转换为 Transcript。"""
        raw_utterances = body.get("utterances")
        utterances = None
        if isinstance(raw_utterances, list):
            utterances = [
                Utterance(speaker=str(u.get("speaker", "")), text=u.get("text", ""))
                for u in raw_utterances
                if isinstance(u, dict)
            ]

        transcript = Transcript(
            id=body.get("id", ""),
            text=body.get("text") or "",
            utterances=utterances,
        )
        logger.info(
            "转录结果: %d 字, %d 个说话人分段",
            len(transcript.text), len(utterances or []),
        )
        return transcript


def _check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise RequestCancelled("请求已取消")
