"""
分析提取模块 - 用一次 LeMUR 请求得到情感、类型、合作、歌词四项分析。

提示词一次性要求大模型给出四个带编号标签的小节，再从回复文本中
按行解析出对应字段。支持两种格式：

- prose：原始四行文本格式。逐行按第一个冒号拆分标签和内容，
  标签必须与四个固定字符串完全一致。歌词只保留标签所在的那一行，
  后续行不会被合并（已知限制，保持不变）。
- json：要求大模型输出固定键名的 JSON 对象，多行歌词可以完整保留；
  回复不是 JSON 对象时退回 prose 解析。

两种解析都不会抛出异常，结果以 ParseOutcome 返回，包含缺失字段和
未匹配行等诊断信息，调用方可以区分“模型没给出”与“解析没认出”。
"""

import json
import threading
from typing import Optional

from app.logger import get_logger
from app.models import ANALYSIS_FIELDS, AnalysisResult, ParseOutcome

logger = get_logger("analysis")

SENTIMENT_LABEL = "1. Sentiment Analysis"
GENRE_LABEL = "2. Genre Identification"
COLLABORATION_LABEL = "3. Collaboration Check"
LYRICS_LABEL = "4. Creative Lyrics Generation"

# 标签 -> AnalysisResult 字段名
LABEL_FIELDS = {
    SENTIMENT_LABEL: "sentiment",
    GENRE_LABEL: "genre",
    COLLABORATION_LABEL: "collaboration",
    LYRICS_LABEL: "lyrics",
}

# 歌词行直接去掉这个前缀，而不是按冒号拆分，保留歌词内部的冒号
_LYRICS_PREFIX = f"{LYRICS_LABEL}:"

ANALYSIS_PROMPT = """Perform a comprehensive multi-part analysis of this audio transcript:
1. Sentiment Analysis: Identify the emotional tone of the audio
2. Genre Identification: Determine the music genre
3. Collaboration Check: Assess if multiple artists are involved
4. Creative Lyrics Generation: Write an original set of lyrics inspired by the audio's essence and emotional context

Provide detailed, creative responses for each subtask."""

STRUCTURED_ANALYSIS_PROMPT = """Perform a comprehensive multi-part analysis of this audio transcript and respond with a single JSON object only, with no text before or after it.
The object must have exactly these string keys:
- "sentiment": the emotional tone of the audio
- "genre": the music genre
- "collaboration": whether multiple artists are involved
- "lyrics": an original set of lyrics inspired by the audio's essence and emotional context (use \\n between lines)"""


def _build_outcome(analysis: AnalysisResult, unmatched_lines: list[str], fmt: str) -> ParseOutcome:
    missing = [name for name in ANALYSIS_FIELDS if getattr(analysis, name) is None]
    if not missing:
        status = "complete"
    elif len(missing) == len(ANALYSIS_FIELDS):
        status = "empty"
    else:
        status = "partial"
    return ParseOutcome(
        analysis=analysis,
        status=status,
        missing=missing,
        unmatched_lines=unmatched_lines,
        format=fmt,
    )


def parse_analysis(response_text: str) -> ParseOutcome:
    """
    按四行标签格式解析大模型回复。

    每一行按第一个冒号拆成标签和内容（两边去空白），标签与四个固定
    字符串逐字比对。歌词行改为去掉 "4. Creative Lyrics Generation:" 前缀
    后取整行，因此歌词中的冒号会保留，但只保留这一行。同一标签出现
    多次时以最后一次为准。标签后没有冒号的行视为未匹配。

    Args:
        response_text: 大模型回复原文

    Returns:
        ParseOutcome: 解析出的字段及诊断信息，不会抛出异常
    """
    analysis = AnalysisResult()
    unmatched: list[str] = []

    for line in (response_text or "").splitlines():
        if not line.strip():
            continue

        label, sep, value = line.partition(":")
        field_name = LABEL_FIELDS.get(label.strip())

        # 只有标签没有冒号：没有取到任何内容，字段保持缺失
        if field_name is None or not sep:
            unmatched.append(line.strip())
        elif field_name == "lyrics":
            analysis.lyrics = line.replace(_LYRICS_PREFIX, "", 1).strip()
        else:
            setattr(analysis, field_name, value.strip())

    return _build_outcome(analysis, unmatched, "prose")


def _strip_code_fence(text: str) -> str:
    """去掉 ```json ... ``` 包裹。"""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.splitlines()[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


def parse_structured_analysis(response_text: str) -> ParseOutcome:
    """
    解析 JSON 格式的大模型回复。

    只接受字符串类型的字段值；非字符串值计为缺失并记录到诊断中。
    回复不是 JSON 对象时退回 parse_analysis()。

    Args:
        response_text: 大模型回复原文

    Returns:
        ParseOutcome: 解析结果，format 标明实际使用的解析方式
    """
    try:
        data = json.loads(_strip_code_fence(response_text or ""))
    except ValueError:
        data = None

    if not isinstance(data, dict):
        logger.warning("回复不是 JSON 对象，退回按行解析")
        outcome = parse_analysis(response_text)
        outcome.unmatched_lines.insert(0, "<response is not a JSON object>")
        return outcome

    analysis = AnalysisResult()
    unmatched: list[str] = []
    for name in ANALYSIS_FIELDS:
        value = data.get(name)
        if isinstance(value, str):
            setattr(analysis, name, value.strip())
        elif value is not None:
            unmatched.append(f"{name}: expected string, got {type(value).__name__}")

    for key in data:
        if key not in ANALYSIS_FIELDS:
            unmatched.append(f"{key}: unexpected key")

    return _build_outcome(analysis, unmatched, "json")


class AnalysisExtractor:
    """
    对一份已完成的转录发起四项分析并解析结果。

    使用方式：
        extractor = AnalysisExtractor(client, final_model="anthropic/claude-3-5-sonnet")
        outcome = extractor.extract(transcript.id)
        outcome.analysis.lyrics
    """

    def __init__(self, client, final_model: str, analysis_format: str = "prose"):
        """
        Args:
            client: 提供 lemur_task() 的 AssemblyClient
            final_model: LeMUR 使用的大模型
            analysis_format: 'prose' 或 'json'
        """
        if analysis_format not in ("prose", "json"):
            raise ValueError(f"不支持的分析格式: {analysis_format}")
        self.client = client
        self.final_model = final_model
        self.analysis_format = analysis_format

    @property
    def prompt(self) -> str:
        if self.analysis_format == "json":
            return STRUCTURED_ANALYSIS_PROMPT
        return ANALYSIS_PROMPT

    def extract(self, transcript_id: str, cancel: Optional[threading.Event] = None) -> ParseOutcome:
        """
        发起一次 LeMUR 任务并解析回复。

        Raises:
            AssemblyError: LeMUR 调用失败（解析失败不抛异常）
        """
        response_text = self.client.lemur_task(
            [transcript_id],
            prompt=self.prompt,
            final_model=self.final_model,
            cancel=cancel,
        )

        if self.analysis_format == "json":
            outcome = parse_structured_analysis(response_text)
        else:
            outcome = parse_analysis(response_text)

        if outcome.is_complete:
            logger.info("[%s] 分析解析完成（%s）", transcript_id, outcome.format)
        else:
            logger.warning(
                "[%s] 分析解析不完整: status=%s, 缺失=%s, 未匹配行=%d",
                transcript_id, outcome.status, outcome.missing, len(outcome.unmatched_lines),
            )
        return outcome
