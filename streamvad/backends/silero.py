"""Silero VAD スコアラー

Silero VAD v5 の ONNX モデルを onnxruntime で直接実行する。
LSTM 状態と直前ウィンドウの末尾（コンテキスト）を
呼び出しごとに受け渡すため、スコアラー自体は状態を持たない。
"""

from __future__ import annotations

import logging
import os
from importlib import resources
from pathlib import Path
from typing import Any, NamedTuple, Optional, Union

import numpy as np

logger = logging.getLogger(__name__)

# モデルパスの上書き用環境変数
MODEL_PATH_ENV = "STREAMVAD_SILERO_MODEL"


class SileroState(NamedTuple):
    """Silero v5 の再帰状態"""

    state: np.ndarray  # (2, 1, 128) float32
    context: np.ndarray  # (1, context_size) float32


def _default_model_path() -> Path:
    """silero-vad パッケージに同梱された ONNX モデルのパスを返す"""
    env_value = os.environ.get(MODEL_PATH_ENV)
    if env_value:
        path = Path(env_value).expanduser()
        if not path.is_file():
            logger.warning(
                "%s points to a missing file '%s', falling back to bundled model",
                MODEL_PATH_ENV,
                env_value,
            )
        else:
            return path

    try:
        bundled = resources.files("silero_vad").joinpath("data/silero_vad.onnx")
    except ModuleNotFoundError as e:
        raise ImportError(
            "silero-vad is required for the bundled model. "
            "Install with: pip install streamvad[silero]"
        ) from e
    return Path(str(bundled))


class SileroScorer:
    """
    Silero VAD v5 スコアラー

    VADScorer Protocol を実装。
    512 samples (32ms @ 16kHz) / 256 samples (32ms @ 8kHz) のウィンドウを評価する。

    Args:
        sample_rate: 8000 または 16000
        model_path: ONNX モデルのパス（None で silero-vad 同梱モデル）

    Raises:
        ImportError: onnxruntime または silero-vad がインストールされていない場合
        ValueError: 未サポートのサンプリングレート

    Usage:
        scorer = SileroScorer()
        state = scorer.initial_state()
        probability, state = scorer.score(window, state)
    """

    SUPPORTED_SAMPLE_RATES = (8000, 16000)
    STATE_SHAPE = (2, 1, 128)

    def __init__(
        self,
        sample_rate: int = 16000,
        model_path: Optional[Union[str, Path]] = None,
    ):
        if sample_rate not in self.SUPPORTED_SAMPLE_RATES:
            raise ValueError(
                f"sample_rate must be one of {self.SUPPORTED_SAMPLE_RATES}, got {sample_rate}"
            )

        self._sample_rate = sample_rate
        self._frame_size = 512 if sample_rate == 16000 else 256
        self._context_size = 64 if sample_rate == 16000 else 32
        self._model_path = Path(model_path) if model_path is not None else None
        self._session: Any = None
        self._sr = np.array(sample_rate, dtype=np.int64)

        self._initialize()

    def _initialize(self) -> None:
        """モデルを初期化"""
        try:
            import onnxruntime
        except ImportError as e:
            raise ImportError(
                "onnxruntime is required for Silero VAD. "
                "Install with: pip install streamvad[silero]"
            ) from e

        path = self._model_path or _default_model_path()

        opts = onnxruntime.SessionOptions()
        opts.inter_op_num_threads = 1
        opts.intra_op_num_threads = 1
        self._session = onnxruntime.InferenceSession(
            str(path),
            sess_options=opts,
            providers=["CPUExecutionProvider"],
        )
        self._model_path = path
        logger.info(f"Silero VAD loaded (model={path}, sample_rate={self._sample_rate})")

    def initial_state(self) -> SileroState:
        return SileroState(
            state=np.zeros(self.STATE_SHAPE, dtype=np.float32),
            context=np.zeros((1, self._context_size), dtype=np.float32),
        )

    def score(self, window: np.ndarray, state: SileroState) -> tuple[float, SileroState]:
        """
        1ウィンドウを評価

        Args:
            window: float32形式の音声データ（frame_size samples）
            state: 直前の SileroState

        Returns:
            (probability, 新しい SileroState)
        """
        x = np.asarray(window, dtype=np.float32).reshape(1, -1)
        x = np.concatenate([state.context, x], axis=1)

        output, new_state = self._session.run(
            None,
            {"input": x, "state": state.state, "sr": self._sr},
        )
        probability = float(np.asarray(output).reshape(-1)[0])
        return probability, SileroState(
            state=np.asarray(new_state, dtype=np.float32),
            context=x[:, -self._context_size :].copy(),
        )

    @property
    def frame_size(self) -> int:
        return self._frame_size

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def name(self) -> str:
        """スコアラー識別子"""
        return "silero"

    @property
    def config(self) -> dict:
        """レポート用の設定パラメータを返す"""
        return {
            "sample_rate": self._sample_rate,
            "model_path": str(self._model_path),
        }
