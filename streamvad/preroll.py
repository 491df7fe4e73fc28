"""プリロールバッファとセグメント組み立て

受信した生チャンクを保持し、発話終了時にプリロール付きの
連続した音声セグメントを組み立てる。

位置はすべてストリーム先頭からの絶対サンプル番号で扱う。
チャンクは deque に追加するだけで、先頭からの破棄も O(1)。
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Optional

import numpy as np

from .events import SpeechSegment

logger = logging.getLogger(__name__)


class PreRollBuffer:
    """
    プリロールバッファ

    NON_SPEECH 中は直近 pre_roll_ms + guard_samples 分（と最新チャンク）だけを保持する。
    mark() 後は発話の長さが事前に分からないため全チャンクを保持し、
    max_buffer_ms を超えた場合のみ古いチャンクを破棄する。

    Args:
        sample_rate: サンプリングレート
        pre_roll_ms: プリロール長（ミリ秒）
        max_buffer_ms: 発話中にバッファする上限（ミリ秒）
        guard_samples: 追加で保持するサンプル数。ウィンドウは前のチャンクの
            残余から始まり得るため、通常はウィンドウ長を指定する
    """

    def __init__(
        self,
        sample_rate: int,
        pre_roll_ms: int,
        max_buffer_ms: int,
        guard_samples: int = 0,
    ):
        if sample_rate <= 0:
            raise ValueError(f"sample_rate must be positive, got {sample_rate}")
        self._sample_rate = sample_rate
        self._guard_samples = guard_samples
        self.configure(pre_roll_ms, max_buffer_ms)

        self._chunks: deque[np.ndarray] = deque()
        self._start_index = 0
        self._end_index = 0
        self._mark: Optional[int] = None
        self._unaligned = 0

    def configure(self, pre_roll_ms: int, max_buffer_ms: int) -> None:
        """プリロール長と上限を変更（保持中の音声は次の追加時に反映）"""
        self._pre_roll_samples = self._ms_to_samples(pre_roll_ms)
        self._max_samples = self._ms_to_samples(max_buffer_ms)

    def append(self, chunk: np.ndarray, unaligned: int = 0) -> int:
        """
        チャンクを追加（コピーして保持）

        Args:
            chunk: 音声チャンク
            unaligned: このチャンクより前に受け取り、まだウィンドウとして
                評価されていないサンプル数。guard_samples より多い場合は
                その分も保持する

        Returns:
            上限超過により発話区間から失われたサンプル数（通常は 0）
        """
        if len(chunk) == 0:
            return 0

        self._unaligned = unaligned
        self._chunks.append(np.array(chunk, dtype=np.float32))
        self._end_index += len(chunk)

        if self._mark is None:
            self._trim_to_pre_roll()
            return 0
        return self._enforce_cap()

    def mark(self, onset_index: int) -> int:
        """
        発話開始位置を記録し、プリロール開始位置（マーク）を返す

        Args:
            onset_index: 発話と判定されたウィンドウの先頭（絶対サンプル番号）
        """
        onset_index = min(onset_index, self._end_index)
        self._mark = max(self._start_index, onset_index - self._pre_roll_samples)
        return self._mark

    def extract_from_mark(self) -> np.ndarray:
        """マークから最新チャンク末尾までを連続した配列として返す（コピー）"""
        if self._mark is None:
            return np.zeros(0, dtype=np.float32)

        pieces = []
        position = self._start_index
        for chunk in self._chunks:
            chunk_end = position + len(chunk)
            if chunk_end > self._mark:
                pieces.append(chunk[max(0, self._mark - position) :])
            position = chunk_end

        if not pieces:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(pieces)

    def release(self) -> None:
        """マークを解除し、プリロール分まで縮める"""
        self._mark = None
        self._trim_to_pre_roll()

    def clear(self) -> None:
        """すべて破棄（絶対位置も 0 に戻す）"""
        self._chunks.clear()
        self._start_index = 0
        self._end_index = 0
        self._mark = None
        self._unaligned = 0

    def _trim_to_pre_roll(self) -> None:
        if not self._chunks:
            return
        # 最新チャンクより前に pre_roll + guard（未評価サンプルを含む）分を残す
        guard = max(self._guard_samples, self._unaligned)
        target = self._pre_roll_samples + guard + len(self._chunks[-1])
        while len(self._chunks) > 1 and self.buffered_samples - len(self._chunks[0]) >= target:
            self._drop_oldest()

    def _enforce_cap(self) -> int:
        old_mark = self._mark
        while len(self._chunks) > 1 and self.buffered_samples > self._max_samples:
            self._drop_oldest()

        if self._mark < self._start_index:
            self._mark = self._start_index

        lost = self._mark - old_mark
        if lost > 0:
            logger.warning(
                f"Speech buffer exceeded {self._max_samples / self._sample_rate:.1f}s, "
                f"dropped {lost * 1000 / self._sample_rate:.0f}ms of oldest audio"
            )
        return lost

    def _drop_oldest(self) -> None:
        chunk = self._chunks.popleft()
        self._start_index += len(chunk)

    def _ms_to_samples(self, ms: float) -> int:
        return int(round(ms * self._sample_rate / 1000))

    @property
    def start_index(self) -> int:
        """保持している最古サンプルの絶対位置"""
        return self._start_index

    @property
    def end_index(self) -> int:
        """次に追加されるサンプルの絶対位置"""
        return self._end_index

    @property
    def buffered_samples(self) -> int:
        return self._end_index - self._start_index

    @property
    def buffered_ms(self) -> float:
        return self.buffered_samples * 1000 / self._sample_rate

    @property
    def marked(self) -> Optional[int]:
        return self._mark

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    @property
    def pre_roll_samples(self) -> int:
        return self._pre_roll_samples


class SegmentAssembler:
    """
    セグメント組み立て

    発話開始で PreRollBuffer にマークを付け、有効な発話終了時に
    マークから最新チャンクまでを SpeechSegment にまとめる。
    出力の有無にかかわらず終了後はバッファをプリロール分まで縮める。

    Args:
        buffer: プリロールバッファ
        sample_rate: サンプリングレート
    """

    def __init__(self, buffer: PreRollBuffer, sample_rate: int):
        self._buffer = buffer
        self._sample_rate = sample_rate
        self._onset_index: Optional[int] = None
        self._onset_time = 0.0

    @property
    def active(self) -> bool:
        return self._onset_index is not None

    def begin(self, onset_index: int, onset_time: float) -> None:
        """
        発話開始を記録

        Args:
            onset_index: 発話と判定されたウィンドウの先頭（絶対サンプル番号）
            onset_time: そのウィンドウ先頭サンプルの時刻（ミリ秒）
        """
        self._buffer.mark(onset_index)
        self._onset_index = onset_index
        self._onset_time = onset_time

    def finish(self, end_time: float, average_probability: float) -> SpeechSegment:
        """
        セグメントを確定

        duration_ms はサンプル数から算出する。start_time はオンセット時刻から
        実際に含めたプリロール長を差し引いた値（0 未満にはしない）。
        """
        samples = self._buffer.extract_from_mark()
        mark = self._buffer.marked
        offset_ms = 0.0
        if mark is not None and self._onset_index is not None:
            # 上限超過でマークがオンセットを追い越した場合は負になる
            offset_ms = (self._onset_index - mark) * 1000 / self._sample_rate
        start_time = max(0.0, self._onset_time - offset_ms)

        segment = SpeechSegment.from_samples(
            samples=samples,
            sample_rate=self._sample_rate,
            start_time=start_time,
            end_time=end_time,
            average_probability=average_probability,
        )
        if segment.start_time >= segment.end_time:
            # 呼び出し元の時刻がサンプル数と大きくずれている場合
            segment.start_time = segment.end_time - segment.duration_ms

        self.discard()
        return segment

    def discard(self) -> None:
        """セグメントを出力せずに終了"""
        self._buffer.release()
        self._onset_index = None
        self._onset_time = 0.0
