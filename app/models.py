"""
数据模型 - 转录、分析、历史记录的核心数据结构。

这些 dataclass 被 assembly_client.py、analysis.py、history.py 和 main.py
共同使用，因此独立为单独模块。to_dict() 输出的就是接口返回的 JSON 结构。
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Utterance:
    """
    一段带说话人标签的话语。

    Attributes:
        speaker: 说话人标签（如 'A'、'B'）
        text: 该说话人所说的文字
    """
    speaker: str
    text: str

    def to_dict(self) -> dict:
        return {"speaker": self.speaker, "text": self.text}


@dataclass
class Transcript:
    """
    一次上传对应的完整转录结果，创建后不再修改。

    Attributes:
        id: 上游服务分配的转录 ID（用于发起 LeMUR 分析）
        text: 完整转录文本
        utterances: 按时间顺序排列的说话人分段；上游未返回时为 None
    """
    id: str
    text: str
    utterances: Optional[list[Utterance]] = None

    def to_dict(self) -> dict:
        data: dict = {"text": self.text}
        if self.utterances is not None:
            data["utterances"] = [u.to_dict() for u in self.utterances]
        return data


# 分析结果的四个字段，顺序与提示词中的编号一致
ANALYSIS_FIELDS = ("sentiment", "genre", "collaboration", "lyrics")


@dataclass
class AnalysisResult:
    """
    从大模型回复中解析出的四项分析结果，任一字段都可能缺失。

    Attributes:
        sentiment: 情感基调
        genre: 音乐类型
        collaboration: 是否多人合作
        lyrics: 生成的歌词
    """
    sentiment: Optional[str] = None
    genre: Optional[str] = None
    collaboration: Optional[str] = None
    lyrics: Optional[str] = None

    def to_dict(self) -> dict:
        """只输出已解析到的字段，缺失字段在 JSON 中不出现。"""
        return {
            name: getattr(self, name)
            for name in ANALYSIS_FIELDS
            if getattr(self, name) is not None
        }


@dataclass
class ParseOutcome:
    """
    分析解析的结果，区分完整 / 部分 / 空三种状态并携带诊断信息。

    Attributes:
        analysis: 解析出的字段
        status: 'complete' / 'partial' / 'empty'
        missing: 未找到的字段名
        unmatched_lines: 没有匹配任何标签的非空行
        format: 产生该结果的解析器（'prose' 或 'json'）
    """
    analysis: AnalysisResult
    status: str
    missing: list[str] = field(default_factory=list)
    unmatched_lines: list[str] = field(default_factory=list)
    format: str = "prose"

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    def diagnostics(self) -> dict:
        return {
            "status": self.status,
            "missing": list(self.missing),
            "unmatched_lines": list(self.unmatched_lines),
            "format": self.format,
        }


@dataclass
class HistoryItem:
    """
    一条历史记录，在每次成功转录后追加。

    序列化时使用 camelCase 键名（fileName），与浏览器 localStorage
    中保存的旧版数组格式保持一致，旧数据可直接读入。

    Attributes:
        id: 毫秒时间戳，作为记录标识
        file_name: 上传的文件名
        timestamp: ISO-8601 格式的创建时间
        utterances: 说话人分段（可选）
        lyrics: 生成的歌词（可选）
    """
    id: int
    file_name: str
    timestamp: str
    utterances: Optional[list[Utterance]] = None
    lyrics: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict = {
            "id": self.id,
            "fileName": self.file_name,
            "timestamp": self.timestamp,
        }
        if self.utterances is not None:
            data["utterances"] = [u.to_dict() for u in self.utterances]
        if self.lyrics is not None:
            data["lyrics"] = self.lyrics
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryItem":
        """
        从 JSON 字典还原记录。

        Raises:
            ValueError: 缺少必填字段或字段类型不对
        """
        if not isinstance(data, dict):
            raise ValueError(f"历史记录必须是对象，实际为 {type(data).__name__}")

        item_id = data.get("id")
        file_name = data.get("fileName")
        timestamp = data.get("timestamp")
        if isinstance(item_id, bool) or not isinstance(item_id, int):
            raise ValueError(f"无效的 id: {item_id!r}")
        if not isinstance(file_name, str):
            raise ValueError(f"无效的 fileName: {file_name!r}")
        if not isinstance(timestamp, str):
            raise ValueError(f"无效的 timestamp: {timestamp!r}")

        utterances = None
        raw_utterances = data.get("utterances")
        if raw_utterances is not None:
            if not isinstance(raw_utterances, list):
                raise ValueError("utterances 必须是数组")
            utterances = []
            for u in raw_utterances:
                if not isinstance(u, dict):
                    raise ValueError("utterance 必须是对象")
                utterances.append(Utterance(speaker=str(u.get("speaker", "")), text=str(u.get("text", ""))))

        lyrics = data.get("lyrics")
        if lyrics is not None and not isinstance(lyrics, str):
            raise ValueError(f"无效的 lyrics: {lyrics!r}")

        return cls(
            id=item_id,
            file_name=file_name,
            timestamp=timestamp,
            utterances=utterances,
            lyrics=lyrics,
        )
