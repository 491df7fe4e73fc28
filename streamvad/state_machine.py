"""VADステートマシン

2状態（NON_SPEECH / SPEECH）のヒステリシス遷移を管理する。
音声データには触れず、ウィンドウごとの確率とタイムスタンプだけを扱う。
"""

from __future__ import annotations

import logging
from enum import Enum, auto

from .config import VADConfig
from .events import SpeechState

logger = logging.getLogger(__name__)


class Transition(Enum):
    """advance() / force_end() の結果"""

    NONE = auto()  # 遷移なし
    START = auto()  # 発話開始
    END_VALID = auto()  # 発話終了（min_speech_ms 以上 → セグメント出力）
    END_DISCARDED = auto()  # 発話終了（短すぎるため破棄）

    @property
    def is_end(self) -> bool:
        return self in (Transition.END_VALID, Transition.END_DISCARDED)


class HysteresisStateMachine:
    """
    ヒステリシス付き VAD ステートマシン

    状態遷移:
        NON_SPEECH --(p > positive)--> SPEECH
        SPEECH --(p < negative が min_silence_ms 累積)--> NON_SPEECH

    SPEECH 中、negative <= p < positive の確率（デッドゾーン）は
    状態も無音累積も変更しない。

    Args:
        config: VAD設定
        frame_ms: 1ウィンドウの長さ（ミリ秒）

    Usage:
        sm = HysteresisStateMachine(VADConfig(), frame_ms=32.0)

        for probability, timestamp in scores:
            transition = sm.advance(probability, timestamp)
            if transition is Transition.END_VALID:
                emit_segment(sm.average_probability)

        # ストリーム終了時
        sm.force_end(last_timestamp)
    """

    def __init__(self, config: VADConfig, frame_ms: float):
        if frame_ms <= 0:
            raise ValueError(f"frame_ms must be positive, got {frame_ms}")
        self.config = config
        self._frame_ms = frame_ms

        self._state = SpeechState.NON_SPEECH
        self._speech_start_time = 0.0
        self._silence_ms = 0.0

        # 直近の発話区間の確率統計
        self._probability_sum = 0.0
        self._probability_count = 0

    @property
    def state(self) -> SpeechState:
        """現在の状態"""
        return self._state

    @property
    def is_speech(self) -> bool:
        return self._state is SpeechState.SPEECH

    @property
    def speech_start_time(self) -> float:
        return self._speech_start_time

    @property
    def silence_ms(self) -> float:
        """SPEECH 中に累積した無音時間"""
        return self._silence_ms

    @property
    def frame_ms(self) -> float:
        return self._frame_ms

    @property
    def average_probability(self) -> float:
        """直近（または進行中）の発話区間の平均確率"""
        if self._probability_count == 0:
            return 0.0
        return self._probability_sum / self._probability_count

    def advance(self, probability: float, timestamp: float) -> Transition:
        """
        1ウィンドウ分の確率で状態を進める

        Args:
            probability: VAD確率（0.0-1.0）
            timestamp: ウィンドウ末尾のタイムスタンプ（ミリ秒）

        Returns:
            発生した遷移
        """
        if self._state is SpeechState.NON_SPEECH:
            return self._handle_non_speech(probability, timestamp)
        return self._handle_speech(probability, timestamp)

    def _handle_non_speech(self, probability: float, timestamp: float) -> Transition:
        """NON_SPEECH状態の処理"""
        if probability > self.config.positive_threshold:
            self._transition_to(SpeechState.SPEECH)
            self._speech_start_time = timestamp
            self._probability_sum = probability
            self._probability_count = 1
            return Transition.START
        return Transition.NONE

    def _handle_speech(self, probability: float, timestamp: float) -> Transition:
        """SPEECH状態の処理"""
        self._probability_sum += probability
        self._probability_count += 1

        if probability < self.config.negative_threshold:
            self._silence_ms += self._frame_ms
            if self._silence_ms >= self.config.min_silence_ms:
                return self._end(timestamp)
        elif probability >= self.config.positive_threshold:
            self._silence_ms = 0.0

        return Transition.NONE

    def force_end(self, timestamp: float) -> Transition:
        """SPEECH 中なら強制的に終了させる（flush 用）"""
        if self._state is SpeechState.SPEECH:
            return self._end(timestamp)
        return Transition.NONE

    def _end(self, timestamp: float) -> Transition:
        speech_ms = timestamp - self._speech_start_time
        self._transition_to(SpeechState.NON_SPEECH)
        if speech_ms >= self.config.min_speech_ms:
            return Transition.END_VALID
        logger.debug(
            f"Discarding speech run shorter than min_speech_ms "
            f"({speech_ms:.0f}ms < {self.config.min_speech_ms}ms)"
        )
        return Transition.END_DISCARDED

    def _transition_to(self, new_state: SpeechState) -> None:
        """状態遷移"""
        self._state = new_state
        self._silence_ms = 0.0

    def update_config(self, config: VADConfig) -> None:
        """設定を差し替える（状態と累積値は維持）"""
        self.config = config

    def reset(self) -> None:
        """状態を完全にリセット"""
        self._state = SpeechState.NON_SPEECH
        self._speech_start_time = 0.0
        self._silence_ms = 0.0
        self._probability_sum = 0.0
        self._probability_count = 0
