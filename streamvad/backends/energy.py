"""エネルギー（RMS）ベースのスコアラー

モデルを使わない簡易スコアラー。モデルが利用できない環境での
フォールバックや、テスト用の決定的なスコアラーとして使う。
"""

from __future__ import annotations

import numpy as np


class EnergyScorer:
    """
    RMS エネルギーから擬似的な発話確率を求めるスコアラー

    rms > threshold なら min(rms * 2, 1.0)、それ以外は rms をそのまま返す。
    状態は持たない。

    Args:
        threshold: 発話とみなす RMS の下限
        frame_size: ウィンドウ長（samples）
        sample_rate: サンプリングレート
    """

    def __init__(
        self,
        threshold: float = 0.02,
        frame_size: int = 512,
        sample_rate: int = 16000,
    ):
        if frame_size <= 0:
            raise ValueError(f"frame_size must be positive, got {frame_size}")
        self._threshold = threshold
        self._frame_size = frame_size
        self._sample_rate = sample_rate

    def initial_state(self) -> None:
        return None

    def score(self, window: np.ndarray, state: None) -> tuple[float, None]:
        rms = float(np.sqrt(np.mean(np.square(window, dtype=np.float64))))
        if rms > self._threshold:
            return min(rms * 2, 1.0), None
        return min(rms, 1.0), None

    @property
    def frame_size(self) -> int:
        return self._frame_size

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def name(self) -> str:
        return "energy"

    @property
    def config(self) -> dict:
        return {
            "threshold": self._threshold,
            "frame_size": self._frame_size,
            "sample_rate": self._sample_rate,
        }
