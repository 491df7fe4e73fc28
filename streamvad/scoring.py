"""スコアラーアダプタ

VADScorer をラップし、再帰状態の所有と置き換えを一手に担う。
呼び出しが失敗した場合は状態も直前の確率も変更しない。
"""

from __future__ import annotations

import math
from typing import Any

import numpy as np

from .backends import VADScorer
from .exceptions import ScorerError, ScorerOutputError


class ScorerAdapter:
    """
    スコアラーアダプタ

    Args:
        scorer: VADScorer 実装

    Usage:
        adapter = ScorerAdapter(SileroScorer())
        try:
            probability = adapter.score(window)
        except ScorerError:
            probability = adapter.last_probability  # 直前の値を維持
    """

    def __init__(self, scorer: VADScorer):
        self._scorer = scorer
        self._frame_size = scorer.frame_size
        if self._frame_size <= 0:
            raise ValueError(
                f"Scorer {scorer.name} declares invalid frame_size {self._frame_size}"
            )
        self._state: Any = scorer.initial_state()
        self._last_probability = 0.0

    def score(self, window: np.ndarray) -> float:
        """
        1ウィンドウを評価し、成功時のみ状態を置き換える

        Raises:
            ValueError: ウィンドウ長が frame_size と一致しない場合
            ScorerError: スコアラーの失敗、または不正な確率
        """
        probability, new_state = self.evaluate(window)
        self.commit(probability, new_state)
        return probability

    def evaluate(self, window: np.ndarray) -> tuple[float, Any]:
        """
        現在の状態で1ウィンドウを評価する（状態は変更しない）

        ワーカースレッドから呼ぶ部分。結果を採用するかどうかは
        呼び出し元が commit() で決める。

        Returns:
            (probability, new_state)
        """
        if len(window) != self._frame_size:
            raise ValueError(
                f"window must be exactly {self._frame_size} samples, got {len(window)}"
            )

        try:
            probability, new_state = self._scorer.score(window, self._state)
            probability = float(probability)
        except Exception as e:
            raise ScorerError(f"Scorer {self.name} failed: {e}", self.name) from e

        if not math.isfinite(probability) or not 0.0 <= probability <= 1.0:
            raise ScorerOutputError(probability, self.name)

        return probability, new_state

    def commit(self, probability: float, new_state: Any) -> None:
        """evaluate() の結果を採用する"""
        self._state = new_state
        self._last_probability = probability

    def reset(self) -> None:
        """状態をゼロ状態に戻す"""
        self._state = self._scorer.initial_state()
        self._last_probability = 0.0

    @property
    def state(self) -> Any:
        """現在の再帰状態（読み取り専用）"""
        return self._state

    @property
    def last_probability(self) -> float:
        return self._last_probability

    @property
    def frame_size(self) -> int:
        return self._frame_size

    @property
    def sample_rate(self) -> int:
        return self._scorer.sample_rate

    @property
    def name(self) -> str:
        return self._scorer.name
