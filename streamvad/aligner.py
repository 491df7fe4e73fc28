"""フレームアライナ

任意長の音声チャンクを、スコアラーが要求する固定長ウィンドウに分割する。
フレームサイズに満たない残余は次の push() に持ち越す。
"""

from __future__ import annotations

from typing import Iterator, Sequence

import numpy as np


class FrameAligner:
    """
    フレームアライナ

    チャンクを結合し、frame_size ごとのウィンドウを順に返す。
    サンプルを失うことも重複させることもない:

        sum(ウィンドウ長) + remainder_after == remainder_before + len(chunk)

    Args:
        frame_size: ウィンドウ長（samples）

    Usage:
        aligner = FrameAligner(512)

        for chunk in chunks:  # 320 / 640 / 960 samples など任意長
            for window in aligner.push(chunk):
                probability = scorer.score(window)
    """

    def __init__(self, frame_size: int):
        if frame_size <= 0:
            raise ValueError(f"frame_size must be positive, got {frame_size}")
        self._frame_size = frame_size
        self._remainder = np.zeros(0, dtype=np.float32)
        # これまでにウィンドウとして切り出したサンプル総数
        self._consumed = 0

    def push(self, chunk: np.ndarray) -> Iterator[np.ndarray]:
        """
        チャンクを追加し、完成したウィンドウを返す

        残余の更新は呼び出し時点で確定する（イテレータを最後まで
        消費しなくてもサンプル数の整合性は保たれる）。

        Args:
            chunk: 1次元の音声データ（float32）

        Returns:
            frame_size samples のウィンドウ（コピー）を順に返すイテレータ
        """
        buffer = np.concatenate([self._remainder, np.asarray(chunk, dtype=np.float32)])
        count = len(buffer) // self._frame_size
        used = count * self._frame_size

        self._remainder = buffer[used:].copy()
        self._consumed += used

        return self._iter_windows(buffer, count)

    def _iter_windows(self, buffer: np.ndarray, count: int) -> Iterator[np.ndarray]:
        size = self._frame_size
        for i in range(count):
            yield buffer[i * size : (i + 1) * size].copy()

    def rewind(self, windows: Sequence[np.ndarray]) -> None:
        """
        処理しなかったウィンドウを残余の先頭に戻す

        push() が返したウィンドウの末尾側（未処理分）をそのまま渡すこと。
        戻したサンプルは次の push() で同じ位置のウィンドウとして再び返される。
        この間だけ remainder は frame_size 以上になり得る。
        """
        if not windows:
            return
        restored = np.concatenate([*windows, self._remainder])
        self._consumed -= len(restored) - len(self._remainder)
        self._remainder = restored

    def reset(self) -> None:
        """残余を破棄"""
        self._remainder = np.zeros(0, dtype=np.float32)
        self._consumed = 0

    @property
    def frame_size(self) -> int:
        return self._frame_size

    @property
    def remainder(self) -> int:
        """持ち越し中のサンプル数（rewind() 直後を除き 0 <= remainder < frame_size）"""
        return len(self._remainder)

    @property
    def pending(self) -> np.ndarray:
        """持ち越し中のサンプル（コピー）"""
        return self._remainder.copy()

    @property
    def consumed(self) -> int:
        """ウィンドウとして切り出したサンプル総数（次のウィンドウの開始位置）"""
        return self._consumed
