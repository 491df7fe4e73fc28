"""WebRTC VAD スコアラー

WebRTC VAD を使用した音声活動検出。
VADScorer Protocol を実装。
"""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)


class WebRTCScorer:
    """
    WebRTC VAD スコアラー

    VADScorer Protocol を実装。
    軽量で高速な C 拡張ベースの VAD。判定は二値（0.0 / 1.0）で、
    再帰状態は持たない（state は常に None）。

    Args:
        mode: 積極性レベル (0-3)
            - 0: 最も寛容（誤検出少、見逃し多）
            - 3: 最も厳格（誤検出多、見逃し少）
        frame_duration_ms: フレーム長（10, 20, 30ms のいずれか）
        sample_rate: 8000, 16000, 32000, 48000 のいずれか

    Raises:
        ImportError: webrtcvad がインストールされていない場合
        ValueError: 無効な mode / frame_duration_ms / sample_rate

    Usage:
        scorer = WebRTCScorer(mode=3)
        probability, _ = scorer.score(window, None)
    """

    VALID_FRAME_DURATIONS = (10, 20, 30)
    VALID_SAMPLE_RATES = (8000, 16000, 32000, 48000)

    def __init__(
        self,
        mode: int = 3,
        frame_duration_ms: int = 20,
        sample_rate: int = 16000,
    ):
        if mode not in range(4):
            raise ValueError(f"mode must be 0-3, got {mode}")
        if frame_duration_ms not in self.VALID_FRAME_DURATIONS:
            raise ValueError(
                f"frame_duration_ms must be one of {self.VALID_FRAME_DURATIONS}, "
                f"got {frame_duration_ms}"
            )
        if sample_rate not in self.VALID_SAMPLE_RATES:
            raise ValueError(
                f"sample_rate must be one of {self.VALID_SAMPLE_RATES}, got {sample_rate}"
            )

        self._mode = mode
        self._frame_duration_ms = frame_duration_ms
        self._sample_rate = sample_rate
        self._frame_size = (sample_rate * frame_duration_ms) // 1000
        self._vad = None

        self._initialize()

    def _initialize(self) -> None:
        """VAD を初期化"""
        try:
            import webrtcvad

            self._vad = webrtcvad.Vad(self._mode)
            logger.info(
                f"WebRTC VAD loaded (mode={self._mode}, "
                f"frame_duration={self._frame_duration_ms}ms)"
            )
        except ImportError as e:
            raise ImportError(
                "webrtcvad is required. Install with: pip install streamvad[webrtc]"
            ) from e

    def initial_state(self) -> None:
        return None

    def score(self, window: np.ndarray, state: None) -> tuple[float, None]:
        """
        1ウィンドウを評価

        Returns:
            (0.0 or 1.0, None) - WebRTC は binary 判定
        """
        # float32 [-1, 1] → int16 bytes
        pcm = (np.clip(window, -1.0, 1.0) * 32767).astype(np.int16).tobytes()

        is_speech = self._vad.is_speech(pcm, self._sample_rate)
        return (1.0 if is_speech else 0.0), None

    @property
    def frame_size(self) -> int:
        return self._frame_size

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def name(self) -> str:
        """スコアラー識別子"""
        return f"webrtc_mode{self._mode}"

    @property
    def config(self) -> dict:
        """レポート用の設定パラメータを返す"""
        return {
            "mode": self._mode,
            "frame_duration_ms": self._frame_duration_ms,
            "sample_rate": self._sample_rate,
        }
