import os
import tempfile

# 测试期间日志写入临时目录，必须在导入 app 模块之前设置
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="audio-lyrics-logs-"))

import pytest
from fastapi.testclient import TestClient

from app import main
from app.config import Settings
from app.history import MemoryHistoryStore
from app.models import Transcript, Utterance

WELL_FORMED_RESPONSE = (
    "1. Sentiment Analysis: Happy\n"
    "2. Genre Identification: Pop\n"
    "3. Collaboration Check: Solo artist\n"
    "4. Creative Lyrics Generation: Walking home tonight"
)


class FakeAssemblyClient:
    """替代 AssemblyClient，记录调用并返回预设结果。"""

    def __init__(self):
        self.transcript = Transcript(
            id="tr_123",
            text="hello there general kenobi",
            utterances=[
                Utterance(speaker="A", text="hello there"),
                Utterance(speaker="B", text="general kenobi"),
            ],
        )
        self.lemur_response = WELL_FORMED_RESPONSE
        self.transcribe_error = None
        self.lemur_error = None
        self.calls = []

    def transcribe(self, data, cancel=None):
        self.calls.append(("transcribe", data))
        if self.transcribe_error is not None:
            raise self.transcribe_error
        return self.transcript

    def lemur_task(self, transcript_ids, prompt, final_model, cancel=None):
        self.calls.append(("lemur_task", list(transcript_ids), prompt, final_model))
        if self.lemur_error is not None:
            raise self.lemur_error
        return self.lemur_response


@pytest.fixture
def fake_client():
    return FakeAssemblyClient()


@pytest.fixture
def history_store():
    return MemoryHistoryStore(capacity=50)


@pytest.fixture
def api(monkeypatch, fake_client, history_store):
    monkeypatch.setattr(main, "_settings", Settings(api_key="test-key", history_path=None))
    monkeypatch.setattr(main, "_client", fake_client)
    monkeypatch.setattr(main, "_history_store", history_store)
    return TestClient(main.app)
