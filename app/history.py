"""
历史记录模块 - 保存每次成功转录 / 分析的结果。

通过 HistoryStore 接口（append / list / clear）访问，调用方不关心底层存储：
- MemoryHistoryStore：进程内列表，用于测试或未配置存储路径时
- JsonFileHistoryStore：单个 JSON 文件，相当于浏览器中单个 localStorage 键

存储有容量上限，超出后按先进先出淘汰最早的记录。文件内容带版本号：
    {"version": 1, "items": [...]}
旧版 localStorage 直接保存的裸数组视为 version 0，读取时自动迁移。
无法识别的记录移入 "invalid" 数组保存，不会因后续写入而丢失。
"""

import json
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from app.logger import get_logger
from app.models import HistoryItem, Utterance

logger = get_logger("history")

SCHEMA_VERSION = 1
DEFAULT_CAPACITY = 500


class HistoryFormatError(Exception):
    """历史文件无法识别（损坏或来自更新版本），不会被覆盖。"""


def _now_ms() -> int:
    return int(time.time() * 1000)


class HistoryStore(ABC):
    """
    历史记录存储接口。

    list() 按追加顺序返回（最早的在前）。
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"容量必须 >= 1，实际为 {capacity}")
        self.capacity = capacity
        self._lock = threading.Lock()

    @abstractmethod
    def _load(self) -> list[HistoryItem]:
        """读取全部记录。"""

    @abstractmethod
    def _save(self, items: list[HistoryItem]) -> None:
        """整体写回全部记录。"""

    def _store(self, items: list[HistoryItem], item: HistoryItem) -> None:
        """追加到已读出的列表并写回，调用方需持有锁。"""
        items.append(item)
        evicted = len(items) - self.capacity
        if evicted > 0:
            items = items[evicted:]
            logger.info("历史记录超出容量 %d，淘汰最早的 %d 条", self.capacity, evicted)
        self._save(items)

    def append(self, item: HistoryItem) -> HistoryItem:
        """
        追加一条记录，超出容量时淘汰最早的记录。

        Returns:
            HistoryItem: 实际写入的记录
        """
        with self._lock:
            self._store(self._load(), item)
        logger.debug("追加历史记录: id=%d, file=%s", item.id, item.file_name)
        return item

    def record(
        self,
        file_name: str,
        utterances: Optional[list[Utterance]] = None,
        lyrics: Optional[str] = None,
    ) -> HistoryItem:
        """
        以当前时间生成一条记录并追加。

        id 为毫秒时间戳；与上一条记录落在同一毫秒时顺延，保证 id 递增。
        """
        with self._lock:
            items = self._load()
            item_id = _now_ms()
            if items and items[-1].id >= item_id:
                item_id = items[-1].id + 1
            item = HistoryItem(
                id=item_id,
                file_name=file_name,
                timestamp=datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
                utterances=utterances,
                lyrics=lyrics,
            )
            self._store(items, item)
        logger.info("已记录历史: id=%d, file=%s, 歌词=%s", item.id, file_name, "有" if lyrics else "无")
        return item

    def list(self) -> list[HistoryItem]:
        with self._lock:
            return list(self._load())

    def clear(self) -> None:
        with self._lock:
            self._save([])
        logger.info("历史记录已清空")


class MemoryHistoryStore(HistoryStore):
    """进程内的历史记录存储，重启后丢失。"""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        super().__init__(capacity)
        self._items: list[HistoryItem] = []

    def _load(self) -> list[HistoryItem]:
        return list(self._items)

    def _save(self, items: list[HistoryItem]) -> None:
        self._items = list(items)


class JsonFileHistoryStore(HistoryStore):
    """
    基于单个 JSON 文件的历史记录存储。

    写入先落到同目录下的临时文件，再用 os.replace 原子替换；
    多进程同时写入时后写者覆盖先写者，不做合并。

    无法识别的记录不会出现在 list() 中，但会原样保存在文件的
    invalid 数组里，后续写入不会丢失它们；clear() 会一并清除。

    使用方式：
        store = JsonFileHistoryStore("data/history.json", capacity=500)
        store.record("song.mp3", lyrics="Walking home tonight")
        store.list()
    """

    def __init__(self, path: str, capacity: int = DEFAULT_CAPACITY):
        super().__init__(capacity)
        self.path = path
        # 最近一次读取时跳过的原始记录，写回时保留
        self._invalid: list = []
        logger.info("历史记录文件: %s（容量=%d）", path, capacity)

    def _load(self) -> list[HistoryItem]:
        self._invalid = []
        if not os.path.isfile(self.path):
            return []

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except ValueError as e:
            raise HistoryFormatError(f"历史记录文件无法解析: {self.path}: {e}") from e

        raw_items, invalid = self._migrate(raw)

        items: list[HistoryItem] = []
        for index, raw_item in enumerate(raw_items):
            try:
                items.append(HistoryItem.from_dict(raw_item))
            except ValueError as e:
                logger.warning("跳过无效的历史记录 #%d: %s", index, e)
                invalid.append(raw_item)
        self._invalid = invalid
        return items

    def _migrate(self, raw) -> tuple[list, list]:
        """把不同版本的文件内容统一为（记录数组，已隔离的无效记录）。"""
        # version 0：localStorage 中保存的裸数组
        if isinstance(raw, list):
            logger.info("检测到旧版历史记录格式（裸数组，%d 条），将按 version %d 读取", len(raw), SCHEMA_VERSION)
            return raw, []

        if not isinstance(raw, dict):
            raise HistoryFormatError(f"历史记录文件格式无法识别: {type(raw).__name__}")

        version = raw.get("version")
        if not isinstance(version, int) or version > SCHEMA_VERSION:
            raise HistoryFormatError(f"不支持的历史记录版本: {version!r}（当前 {SCHEMA_VERSION}）")

        items = raw.get("items", [])
        if not isinstance(items, list):
            raise HistoryFormatError("历史记录文件中的 items 不是数组")

        invalid = raw.get("invalid", [])
        if not isinstance(invalid, list):
            raise HistoryFormatError("历史记录文件中的 invalid 不是数组")
        return items, list(invalid)

    def clear(self) -> None:
        with self._lock:
            self._invalid = []
            self._save([])
        logger.info("历史记录已清空")

    def _save(self, items: list[HistoryItem]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        payload = {"version": SCHEMA_VERSION, "items": [item.to_dict() for item in items]}
        if self._invalid:
            payload["invalid"] = self._invalid
        fd, tmp_path = tempfile.mkstemp(prefix=".history-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
