"""ストリーミング VAD

フレームアライナ、スコアラー、ステートマシン、プリロールバッファを
組み合わせ、任意長のチャンクから発話イベントとセグメントを生成する。
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from typing import Any, Callable, Mapping, Optional, Union

import numpy as np

from .aligner import FrameAligner
from .backends import VADScorer
from .config import VADConfig
from .events import (
    BufferOverflowEvent,
    ProbabilityEvent,
    ProcessResult,
    ScorerErrorEvent,
    SpeechEndEvent,
    SpeechSegment,
    SpeechSegmentEvent,
    SpeechStartEvent,
    SpeechState,
    VADEvent,
)
from .exceptions import ScorerError, StreamClosedError, VADConfigError
from .preroll import PreRollBuffer, SegmentAssembler
from .scoring import ScorerAdapter
from .state_machine import HysteresisStateMachine, Transition

logger = logging.getLogger(__name__)


class VADStream:
    """
    ストリーミング VAD（1ストリーム = 1インスタンス）

    チャンクごとに process() を呼ぶと、内部でウィンドウに分割して
    スコアラーに渡し、ヒステリシスで発話区間を判定する。
    有効な発話が終わるとプリロール付きの SpeechSegment を返す。

    同一インスタンスに対する process() / flush() / reset() の同時呼び出しは不可。
    呼び出し元で直列化すること。

    Args:
        scorer: VADScorer 実装（SileroScorer など）
        config: VAD設定（None でデフォルト、dict も可）
        executor: スコアラー実行用の Executor（None で専用の1スレッドを作成）

    Raises:
        VADConfigError: 設定が不正な場合（ストリームは作成されない）

    Usage:
        stream = VADStream(SileroScorer())
        stream.set_callbacks(on_segment=lambda s: transcribe(s.samples))

        async for chunk, timestamp in source:
            result = await stream.process(chunk, timestamp)
            update_indicator(result.is_speech, result.probability)

        # ストリーム終了時（発話途中のセグメントを取りこぼさない）
        stream.flush()
        stream.close()
    """

    def __init__(
        self,
        scorer: VADScorer,
        config: Optional[Union[VADConfig, Mapping[str, Any]]] = None,
        executor: Optional[concurrent.futures.Executor] = None,
    ):
        if config is None:
            config = VADConfig()
        elif not isinstance(config, VADConfig):
            config = VADConfig.from_dict(config)
        self.config = config

        sample_rate = scorer.sample_rate
        if sample_rate <= 0:
            raise VADConfigError(f"Scorer {scorer.name} declares invalid sample_rate {sample_rate}")
        if scorer.frame_size <= 0:
            raise VADConfigError(
                f"Scorer {scorer.name} declares invalid frame_size {scorer.frame_size}"
            )

        self._adapter = ScorerAdapter(scorer)
        self._sample_rate = sample_rate
        self._frame_size = self._adapter.frame_size
        self._frame_ms = self._frame_size * 1000 / sample_rate

        self._aligner = FrameAligner(self._frame_size)
        self._state_machine = HysteresisStateMachine(config, frame_ms=self._frame_ms)
        self._buffer = PreRollBuffer(
            sample_rate,
            pre_roll_ms=config.pre_roll_ms,
            max_buffer_ms=config.max_buffer_ms,
            guard_samples=self._frame_size,
        )
        self._assembler = SegmentAssembler(self._buffer, sample_rate)

        self._owns_executor = executor is None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="streamvad-scorer"
        )

        self._last_probability = 0.0
        self._last_timestamp: Optional[float] = None
        self._closed = False

        # コールバック
        self._on_speech_start: Optional[Callable[[SpeechStartEvent], None]] = None
        self._on_speech_end: Optional[Callable[[SpeechEndEvent], None]] = None
        self._on_segment: Optional[Callable[[SpeechSegment], None]] = None
        self._on_error: Optional[Callable[[VADEvent], None]] = None
        self._on_probability: Optional[Callable[[ProbabilityEvent], None]] = None

        logger.debug(
            f"VADStream initialized with {self._adapter.name} "
            f"(frame_size={self._frame_size}, sample_rate={sample_rate})"
        )

    def set_callbacks(
        self,
        on_speech_start: Optional[Callable[[SpeechStartEvent], None]] = None,
        on_speech_end: Optional[Callable[[SpeechEndEvent], None]] = None,
        on_segment: Optional[Callable[[SpeechSegment], None]] = None,
        on_error: Optional[Callable[[VADEvent], None]] = None,
        on_probability: Optional[Callable[[ProbabilityEvent], None]] = None,
    ) -> None:
        """コールバックを設定

        コールバックはイベント発生順に、process() / flush() の戻り値と同じ
        イベントで同期的に呼ばれる。

        Args:
            on_speech_start: 発話開始
            on_speech_end: 発話終了（セグメントの有無にかかわらず）
            on_segment: セグメント確定
            on_error: スコアラー失敗・バッファ超過（非致命）
            on_probability: ウィンドウごとの確率（config.return_probabilities 有効時）
        """
        self._on_speech_start = on_speech_start
        self._on_speech_end = on_speech_end
        self._on_segment = on_segment
        self._on_error = on_error
        self._on_probability = on_probability

    async def process(self, chunk: np.ndarray, timestamp: float) -> ProcessResult:
        """
        音声チャンクを処理

        Args:
            chunk: 1次元の音声データ（float32、または int16 PCM）
            timestamp: チャンク先頭のタイムスタンプ（ミリ秒）

        Returns:
            最新の発話状態・確率と、このチャンクで発生したイベント

        キャンセルされた場合、評価し終えたウィンドウのイベントはコールバックで
        通知され、未評価のウィンドウは次の process() で評価される（サンプルは失われない）。
        実行中だったスコアラー呼び出しの結果は採用しない。
        """
        self._ensure_open()
        audio = self._as_float32(chunk)
        events: list[VADEvent] = []

        # ウィンドウ位置の基準（push 前の値）
        window_start = self._aligner.consumed
        remainder_before = self._aligner.remainder
        self._last_timestamp = timestamp + len(audio) * 1000 / self._sample_rate

        lost = self._buffer.append(audio, unaligned=remainder_before)
        if lost:
            events.append(BufferOverflowEvent(timestamp, lost * 1000 / self._sample_rate))

        loop = asyncio.get_running_loop()
        windows = list(self._aligner.push(audio))
        done = 0
        try:
            for i, window in enumerate(windows):
                onset_index = window_start + i * self._frame_size
                consumed_from_chunk = (i + 1) * self._frame_size - remainder_before
                window_time = timestamp + consumed_from_chunk * 1000 / self._sample_rate

                try:
                    probability, new_state = await loop.run_in_executor(
                        self._executor, self._adapter.evaluate, window
                    )
                except ScorerError as e:
                    logger.warning(f"Scoring failed at {window_time:.0f}ms, holding state: {e}")
                    events.append(ScorerErrorEvent(window_time, e))
                else:
                    # 状態の採用はイベントループ側で行う（キャンセル時に途中結果を残さない）
                    self._adapter.commit(probability, new_state)
                    self._last_probability = probability
                    if self.config.return_probabilities:
                        events.append(ProbabilityEvent(window_time, probability))
                    events.extend(self._advance(probability, window_time, onset_index))
                done += 1
        except asyncio.CancelledError:
            # 未処理のウィンドウは次の process() で評価する
            self._aligner.rewind(windows[done:])
            logger.debug(f"process() cancelled, {len(windows) - done} window(s) deferred")
            self._dispatch(events)
            raise

        self._dispatch(events)
        return ProcessResult(
            is_speech=self._state_machine.is_speech,
            probability=self._last_probability,
            events=events,
        )

    def flush(self, timestamp: Optional[float] = None) -> list[VADEvent]:
        """
        発話途中なら強制的に終了させる

        min_speech_ms を満たしていればセグメントを出力する。
        NON_SPEECH 中は何もしない（2回続けて呼んでも2回目は空）。

        Args:
            timestamp: 終了時刻（None で受信済み音声の末尾の時刻）

        Returns:
            発生したイベント
        """
        self._ensure_open()
        if not self._state_machine.is_speech:
            return []

        if timestamp is None:
            timestamp = (
                self._last_timestamp
                if self._last_timestamp is not None
                else self._state_machine.speech_start_time
            )

        transition = self._state_machine.force_end(timestamp)
        events = self._end(transition, self._last_probability, timestamp)
        self._dispatch(events)
        return events

    def reset(self) -> None:
        """状態をリセット（未確定の発話は出力せずに破棄）"""
        self._assembler.discard()
        self._buffer.clear()
        self._aligner.reset()
        self._adapter.reset()
        self._state_machine.reset()
        self._last_probability = 0.0
        self._last_timestamp = None

    def update_config(self, **changes: Any) -> VADConfig:
        """
        設定を部分更新（バッファと状態は維持）

        Raises:
            VADConfigError: 更新後の設定が不正な場合（設定は変更されない）
        """
        config = self.config.merged(**changes)
        self.config = config
        self._state_machine.update_config(config)
        self._buffer.configure(config.pre_roll_ms, config.max_buffer_ms)
        logger.debug(f"VAD config updated: {changes}")
        return config

    def close(self) -> None:
        """終了処理（未確定の発話は破棄。必要なら先に flush() を呼ぶ）"""
        if self._closed:
            return
        self.reset()
        self._closed = True
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> VADStream:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    async def __aenter__(self) -> VADStream:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    def _advance(self, probability: float, timestamp: float, onset_index: int) -> list[VADEvent]:
        transition = self._state_machine.advance(probability, timestamp)

        if transition is Transition.START:
            # timestamp はウィンドウ末尾の時刻。セグメントはウィンドウ先頭から数える
            self._assembler.begin(onset_index, timestamp - self._frame_ms)
            logger.debug(f"Speech started at {timestamp:.0f}ms (p={probability:.2f})")
            return [SpeechStartEvent(timestamp, probability)]

        if transition.is_end:
            return self._end(transition, probability, timestamp)

        return []

    def _end(self, transition: Transition, probability: float, timestamp: float) -> list[VADEvent]:
        if transition is Transition.END_VALID:
            segment = self._assembler.finish(timestamp, self._state_machine.average_probability)
            logger.debug(
                f"Speech ended at {timestamp:.0f}ms, segment {segment.duration_ms:.0f}ms"
            )
            return [
                SpeechEndEvent(timestamp, probability, segment.duration_ms),
                SpeechSegmentEvent(segment),
            ]

        self._assembler.discard()
        return [SpeechEndEvent(timestamp, probability)]

    def _dispatch(self, events: list[VADEvent]) -> None:
        for event in events:
            if isinstance(event, SpeechStartEvent):
                if self._on_speech_start:
                    self._on_speech_start(event)
            elif isinstance(event, SpeechEndEvent):
                if self._on_speech_end:
                    self._on_speech_end(event)
            elif isinstance(event, SpeechSegmentEvent):
                if self._on_segment:
                    self._on_segment(event.segment)
            elif isinstance(event, ProbabilityEvent):
                if self._on_probability:
                    self._on_probability(event)
            elif self._on_error:
                self._on_error(event)

    def _ensure_open(self) -> None:
        if self._closed:
            raise StreamClosedError("VADStream is closed")

    @staticmethod
    def _as_float32(chunk: np.ndarray) -> np.ndarray:
        audio = np.asarray(chunk)
        if audio.ndim != 1:
            raise ValueError(f"chunk must be 1-D mono audio, got shape {audio.shape}")
        if audio.dtype == np.int16:
            return audio.astype(np.float32) / 32768.0
        if not np.issubdtype(audio.dtype, np.floating):
            raise ValueError(f"chunk must be float or int16 PCM, got {audio.dtype}")
        return audio.astype(np.float32, copy=False)

    @property
    def state(self) -> SpeechState:
        """現在のVAD状態"""
        return self._state_machine.state

    @property
    def is_speech(self) -> bool:
        return self._state_machine.is_speech

    @property
    def last_probability(self) -> float:
        return self._last_probability

    @property
    def last_timestamp(self) -> Optional[float]:
        """受信済み音声の末尾の時刻（最後のチャンクの timestamp + チャンク長）"""
        return self._last_timestamp

    @property
    def frame_size(self) -> int:
        """ウィンドウ長（samples）"""
        return self._frame_size

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def scorer_name(self) -> str:
        """使用中のスコアラー名"""
        return self._adapter.name

    @property
    def closed(self) -> bool:
        return self._closed
