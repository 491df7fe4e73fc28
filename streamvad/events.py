"""VAD イベントと発話セグメント

VADStream が呼び出し元へ返すデータ型を定義する。
時刻はすべて呼び出し元が与えたタイムスタンプ（ミリ秒）基準。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Union

import numpy as np


class SpeechState(Enum):
    """VAD状態"""

    NON_SPEECH = "non-speech"
    SPEECH = "speech"


def confidence_from_probability(probability: float) -> float:
    """平均確率からセグメントの信頼度を求める（固定の階段関数）"""
    if probability > 0.9:
        return 1.0
    if probability > 0.7:
        return 0.9
    if probability > 0.5:
        return 0.8
    return probability


@dataclass(slots=True)
class SpeechSegment:
    """
    確定した発話セグメント

    samples はプリロール（発話開始前の音声）を含む。
    duration_ms はサンプル数から算出した値で、タイムスタンプの差ではない。
    """

    samples: np.ndarray
    start_time: float
    end_time: float
    duration_ms: float
    average_probability: float
    confidence: float
    sample_rate: int

    @classmethod
    def from_samples(
        cls,
        samples: np.ndarray,
        sample_rate: int,
        start_time: float,
        end_time: float,
        average_probability: float,
    ) -> SpeechSegment:
        return cls(
            samples=samples,
            start_time=start_time,
            end_time=end_time,
            duration_ms=len(samples) * 1000 / sample_rate,
            average_probability=average_probability,
            confidence=confidence_from_probability(average_probability),
            sample_rate=sample_rate,
        )

    @property
    def num_samples(self) -> int:
        return len(self.samples)


@dataclass(frozen=True, slots=True)
class ProbabilityEvent:
    """ウィンドウごとの発話確率（return_probabilities 有効時のみ）"""

    type: ClassVar[str] = "probability"

    timestamp: float
    probability: float


@dataclass(frozen=True, slots=True)
class SpeechStartEvent:
    """発話開始"""

    type: ClassVar[str] = "speech-start"

    timestamp: float
    probability: float


@dataclass(frozen=True, slots=True)
class SpeechEndEvent:
    """発話終了（duration_ms はセグメントを出力した場合のみ設定）"""

    type: ClassVar[str] = "speech-end"

    timestamp: float
    probability: float
    duration_ms: Optional[float] = None

    @property
    def has_segment(self) -> bool:
        return self.duration_ms is not None


@dataclass(frozen=True, slots=True)
class SpeechSegmentEvent:
    type: ClassVar[str] = "speech-segment"

    segment: SpeechSegment


@dataclass(frozen=True, slots=True)
class ScorerErrorEvent:
    """スコアラー失敗（非致命。直前の確率と状態を維持して処理を継続）"""

    type: ClassVar[str] = "scorer-error"

    timestamp: float
    error: Exception


@dataclass(frozen=True, slots=True)
class BufferOverflowEvent:
    """発話バッファが上限を超え、古い音声を破棄した"""

    type: ClassVar[str] = "buffer-overflow"

    timestamp: float
    dropped_ms: float


VADEvent = Union[
    ProbabilityEvent,
    SpeechStartEvent,
    SpeechEndEvent,
    SpeechSegmentEvent,
    ScorerErrorEvent,
    BufferOverflowEvent,
]


@dataclass(slots=True)
class ProcessResult:
    """process() の戻り値（UI 向けの即時フィードバック + 発生したイベント）"""

    is_speech: bool
    probability: float
    events: list[VADEvent] = field(default_factory=list)

    @property
    def segments(self) -> list[SpeechSegment]:
        return [e.segment for e in self.events if isinstance(e, SpeechSegmentEvent)]
