"""VAD スコアラーバックエンド

固定長ウィンドウから発話確率を求めるプラグイン可能なスコアラーを提供。
VADScorer Protocol を実装することで独自のスコアラーを追加可能。
"""

from __future__ import annotations

from typing import Any, Protocol

import numpy as np


class VADScorer(Protocol):
    """
    VADスコアラーのプロトコル

    再帰状態（RecurrentState）はスコアラー内部に持たず、
    呼び出しごとに受け取って新しい値を返す。渡された state を
    その場で変更してはならない。

    Usage:
        class MyScorer:
            def score(self, window, state):
                return probability, new_state

            def initial_state(self):
                return None  # 状態を持たない場合

            @property
            def frame_size(self) -> int:
                return 512

            @property
            def sample_rate(self) -> int:
                return 16000

            @property
            def name(self) -> str:
                return "my_scorer"

        stream = VADStream(MyScorer())
    """

    def score(self, window: np.ndarray, state: Any) -> tuple[float, Any]:
        """
        1ウィンドウを評価

        Args:
            window: float32形式の音声データ（ちょうど frame_size samples）
            state: 直前の呼び出しで返された状態（初回は initial_state()）

        Returns:
            (probability 0.0-1.0, new_state)
        """
        ...

    def initial_state(self) -> Any:
        """初期状態（ゼロ状態）を返す"""
        ...

    @property
    def frame_size(self) -> int:
        """
        ウィンドウ長（samples）

        - Silero: 512 samples @ 16kHz (32ms)
        - WebRTC: 160/320/480 samples @ 16kHz (10/20/30ms)
        """
        ...

    @property
    def sample_rate(self) -> int:
        """入力音声のサンプリングレート"""
        ...

    @property
    def name(self) -> str:
        """スコアラー識別子（例: "silero", "webrtc_mode3", "energy"）"""
        ...


# スコアラーは遅延インポート（依存関係を避けるため）
def __getattr__(name: str):
    """遅延インポート for VAD scorers."""
    if name == "SileroScorer":
        from .silero import SileroScorer

        return SileroScorer
    if name == "WebRTCScorer":
        from .webrtc import WebRTCScorer

        return WebRTCScorer
    if name == "EnergyScorer":
        from .energy import EnergyScorer

        return EnergyScorer
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["VADScorer", "SileroScorer", "WebRTCScorer", "EnergyScorer"]
