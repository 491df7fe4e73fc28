"""Unit tests for VADStream."""

import asyncio

import numpy as np
import pytest

from streamvad import (
    BufferOverflowEvent,
    ProbabilityEvent,
    ScorerErrorEvent,
    SpeechEndEvent,
    SpeechSegmentEvent,
    SpeechStartEvent,
    SpeechState,
    StreamClosedError,
    VADConfig,
    VADConfigError,
    VADStream,
)
from streamvad.backends.energy import EnergyScorer
from tests.utils.scorers import GatedScorer, MockScorer

SR = 16000
FRAME = 512
FRAME_MS = 32.0


def _config(**overrides) -> VADConfig:
    params = dict(
        positive_threshold=0.5,
        negative_threshold=0.3,
        min_silence_ms=96,  # 3 frames
        min_speech_ms=128,
        pre_roll_ms=64,  # 1024 samples
    )
    params.update(overrides)
    return VADConfig(**params)


def _feed(stream: VADStream, chunks, timestamps=None):
    """チャンク列を順に process() し、結果のリストを返す"""
    if timestamps is None:
        timestamps = []
        position = 0
        for chunk in chunks:
            timestamps.append(position * 1000 / SR)
            position += len(chunk)

    async def run():
        return [await stream.process(c, t) for c, t in zip(chunks, timestamps)]

    return asyncio.run(run())


def _events(results):
    return [event for result in results for event in result.events]


def _signature(events):
    return [(type(e).__name__, round(e.timestamp, 6)) for e in events if hasattr(e, "timestamp")]


def _frames(count: int) -> list[np.ndarray]:
    return [np.zeros(FRAME, dtype=np.float32) for _ in range(count)]


def _split(audio: np.ndarray, size: int) -> list[np.ndarray]:
    return [audio[i : i + size] for i in range(0, len(audio), size)]


def _tone(count: int, amplitude: float) -> np.ndarray:
    return np.full(count * FRAME, amplitude, dtype=np.float32)


SPEECH_PROBS = [0.1] * 5 + [0.9] * 5 + [0.1] * 3 + [0.1] * 7


class TestVADStreamBasics:
    """VADStream 基本機能テスト"""

    def test_create_with_mock_scorer(self):
        with VADStream(MockScorer(), _config()) as stream:
            assert stream.state == SpeechState.NON_SPEECH
            assert stream.is_speech is False
            assert stream.frame_size == FRAME
            assert stream.sample_rate == SR
            assert stream.scorer_name == "mock"

    def test_frame_size_from_scorer(self):
        with VADStream(MockScorer(frame_size=320)) as stream:
            assert stream.frame_size == 320

    def test_config_from_dict(self):
        with VADStream(MockScorer(), {"min_silence_ms": 500}) as stream:
            assert stream.config.min_silence_ms == 500

    def test_invalid_config_fails_fast(self):
        with pytest.raises(VADConfigError):
            VADStream(MockScorer(), {"positive_threshold": 0.2, "negative_threshold": 0.4})

    def test_invalid_scorer_frame_size(self):
        with pytest.raises(VADConfigError, match="frame_size"):
            VADStream(MockScorer(frame_size=0))

    def test_short_chunk_keeps_last_probability(self):
        """ウィンドウが完成しないチャンクは直前の確率を返す"""
        with VADStream(MockScorer(probabilities=[0.2]), _config()) as stream:
            results = _feed(stream, [np.zeros(FRAME, dtype=np.float32), np.zeros(100, dtype=np.float32)])
            assert results[1].probability == 0.2
            assert results[1].events == []

    def test_windows_scored_in_order(self):
        scorer = MockScorer()
        with VADStream(scorer, _config()) as stream:
            audio = np.arange(3 * FRAME + 100, dtype=np.float32) / 10_000
            _feed(stream, _split(audio, 700))
        assert len(scorer.windows) == 3
        for i, window in enumerate(scorer.windows):
            np.testing.assert_array_equal(window, audio[i * FRAME : (i + 1) * FRAME])


class TestVADStreamSegments:
    """セグメント検出テスト"""

    def test_detects_speech_segment(self):
        with VADStream(MockScorer(probabilities=SPEECH_PROBS), _config()) as stream:
            results = _feed(stream, _frames(len(SPEECH_PROBS)))

        events = _events(results)
        assert [type(e) for e in events] == [SpeechStartEvent, SpeechEndEvent, SpeechSegmentEvent]

        start, end, seg_event = events
        assert start.timestamp == 192.0  # 6 ウィンドウ目の末尾
        assert start.probability == 0.9
        assert end.timestamp == 416.0  # 無音 3 ウィンドウ目の末尾
        assert end.has_segment

        segment = seg_event.segment
        # プリロール 1024 + 発話開始から終了チャンク末尾まで 8 ウィンドウ
        assert len(segment.samples) == 1024 + 8 * FRAME
        assert segment.duration_ms == pytest.approx(320.0)
        assert end.duration_ms == segment.duration_ms
        assert segment.start_time == pytest.approx(96.0)  # 先頭サンプル 1536 の時刻
        assert segment.end_time == 416.0
        assert segment.average_probability == pytest.approx(0.6)
        assert segment.confidence == 0.8

    def test_is_speech_feedback(self):
        with VADStream(MockScorer(probabilities=SPEECH_PROBS), _config()) as stream:
            results = _feed(stream, _frames(len(SPEECH_PROBS)))
        flags = [r.is_speech for r in results]
        assert flags[:5] == [False] * 5
        assert flags[5:12] == [True] * 7
        assert flags[12:] == [False] * 8
        assert results[5].probability == 0.9

    @pytest.mark.parametrize("chunk_size", [320, 640, 960, 1000])
    def test_event_timing_independent_of_chunk_size(self, chunk_size):
        """20/40/60ms チャンクでも同じタイミングで遷移する"""
        audio = np.zeros(len(SPEECH_PROBS) * FRAME, dtype=np.float32)

        with VADStream(MockScorer(probabilities=SPEECH_PROBS), _config()) as reference:
            expected = _events(_feed(reference, _split(audio, FRAME)))
        with VADStream(MockScorer(probabilities=SPEECH_PROBS), _config()) as stream:
            actual = _events(_feed(stream, _split(audio, chunk_size)))

        assert _signature(actual) == _signature(expected)
        segment = actual[-1].segment
        assert segment.start_time == pytest.approx(96.0)  # 先頭サンプル 1536 の時刻
        assert segment.duration_ms == pytest.approx(len(segment.samples) / SR * 1000)

    def test_segment_samples_are_contiguous(self):
        """プリロールを含めサンプルの欠落・重複がない"""
        audio = np.arange(len(SPEECH_PROBS) * FRAME, dtype=np.float32) / 100_000
        with VADStream(MockScorer(probabilities=SPEECH_PROBS), _config()) as stream:
            events = _events(_feed(stream, _split(audio, 320)))

        segment = events[-1].segment
        first = int(round(segment.samples[0] * 100_000))
        assert first == 5 * FRAME - 1024
        np.testing.assert_array_equal(segment.samples, audio[first : first + len(segment.samples)])

    def test_start_time_is_time_of_first_sample(self):
        """正確な時計では start_time は samples[0] の時刻と一致する"""
        audio = np.arange(len(SPEECH_PROBS) * FRAME, dtype=np.float32)
        with VADStream(MockScorer(probabilities=SPEECH_PROBS), _config()) as stream:
            events = _events(_feed(stream, _split(audio, FRAME)))

        segment = events[-1].segment
        first_sample_ms = int(segment.samples[0]) * 1000 / SR
        assert segment.start_time == pytest.approx(first_sample_ms)
        assert segment.end_time - segment.start_time == pytest.approx(segment.duration_ms)

    def test_duration_from_samples_despite_timestamp_drift(self):
        """呼び出し元の時刻がずれても duration_ms はサンプル数から求める"""
        chunks = _frames(len(SPEECH_PROBS))
        drifted = [i * 48.0 for i in range(len(chunks))]  # 実時間の 1.5 倍で進む時計
        with VADStream(MockScorer(probabilities=SPEECH_PROBS), _config()) as stream:
            events = _events(_feed(stream, chunks, drifted))

        segment = events[-1].segment
        assert segment.duration_ms == pytest.approx(len(segment.samples) / SR * 1000)
        assert segment.duration_ms == pytest.approx(320.0)
        assert segment.end_time > segment.start_time

    def test_short_blip_has_no_segment(self):
        probs = [0.9, 0.1, 0.1, 0.1, 0.1]
        with VADStream(MockScorer(probabilities=probs), _config(min_speech_ms=500)) as stream:
            events = _events(_feed(stream, _frames(len(probs))))

        assert [type(e) for e in events] == [SpeechStartEvent, SpeechEndEvent]
        assert events[1].duration_ms is None
        assert stream.state == SpeechState.NON_SPEECH

    def test_two_utterances(self):
        probs = SPEECH_PROBS * 2
        with VADStream(MockScorer(probabilities=probs), _config()) as stream:
            events = _events(_feed(stream, _frames(len(probs))))
        segments = [e.segment for e in events if isinstance(e, SpeechSegmentEvent)]
        assert len(segments) == 2
        assert len(segments[0].samples) == len(segments[1].samples)

    def test_int16_input(self):
        with VADStream(EnergyScorer(), _config()) as stream:
            chunk = np.full(FRAME, 16384, dtype=np.int16)
            result = _feed(stream, [chunk])[0]
        assert result.probability == 1.0
        assert result.is_speech

    def test_rejects_multichannel_input(self):
        with VADStream(MockScorer(), _config()) as stream:
            with pytest.raises(ValueError, match="1-D"):
                _feed(stream, [np.zeros((FRAME, 2), dtype=np.float32)])


class TestVADStreamScorerFailure:
    """スコアラー失敗時の挙動"""

    def test_failure_reported_and_state_held(self):
        scorer = MockScorer(probabilities=[0.1, 0.9, 0.0, 0.9], fail_at={2})
        with VADStream(scorer, _config()) as stream:
            results = _feed(stream, _frames(4))

        failed = results[2]
        assert failed.is_speech is True
        assert failed.probability == 0.9
        assert len(failed.events) == 1
        assert isinstance(failed.events[0], ScorerErrorEvent)
        assert failed.events[0].timestamp == 96.0
        # 失敗した呼び出しの後も直前の状態が渡される
        assert scorer.received_states == [0, 1, 2, 2]

    def test_failure_does_not_accumulate_silence(self):
        """失敗したウィンドウは無音として数えない"""
        probs = [0.9, 0.1, 0.1, 0.0, 0.0, 0.1]
        scorer = MockScorer(probabilities=probs, fail_at={3, 4})
        with VADStream(scorer, _config()) as stream:
            results = _feed(stream, _frames(len(probs)))
        assert results[4].is_speech is True
        assert results[5].is_speech is False

    def test_error_callback(self):
        errors = []
        with VADStream(MockScorer(fail_at={0}), _config()) as stream:
            stream.set_callbacks(on_error=errors.append)
            _feed(stream, _frames(1))
        assert len(errors) == 1
        assert isinstance(errors[0], ScorerErrorEvent)


class TestVADStreamProbabilities:
    """ウィンドウごとの確率出力"""

    def test_disabled_by_default(self):
        with VADStream(MockScorer(probabilities=[0.2, 0.4]), _config()) as stream:
            result = _feed(stream, [np.zeros(2 * FRAME, dtype=np.float32)])[0]
        assert result.events == []
        assert result.probability == 0.4

    def test_every_window_reported(self):
        """60ms チャンク内の複数ウィンドウの確率をすべて出力する"""
        received = []
        scorer = MockScorer(probabilities=[0.1, 0.9, 0.2])
        with VADStream(scorer, _config(return_probabilities=True)) as stream:
            stream.set_callbacks(on_probability=received.append)
            results = _feed(stream, _split(np.zeros(1920, dtype=np.float32), 960))

        assert [(e.timestamp, e.probability) for e in results[0].events] == [(32.0, 0.1)]
        second = results[1].events
        assert [type(e) for e in second] == [ProbabilityEvent, SpeechStartEvent, ProbabilityEvent]
        assert [(e.timestamp, e.probability) for e in second] == [
            (64.0, 0.9),
            (64.0, 0.9),
            (96.0, 0.2),
        ]
        assert results[1].probability == 0.2
        assert [e.probability for e in received] == [0.1, 0.9, 0.2]


class TestVADStreamCancellation:
    """process() のキャンセル"""

    def test_cancel_defers_unscored_windows(self):
        """キャンセルされたウィンドウは次の process() で評価され、サンプルを失わない"""
        scorer = GatedScorer(block_at=1)
        received = []

        async def run(stream):
            stream.set_callbacks(on_probability=received.append)
            first = np.concatenate([_tone(1, a) for a in (0.1, 0.2, 0.3, 0.4)])
            task = asyncio.create_task(stream.process(first, 0.0))
            while not scorer.entered.is_set():
                await asyncio.sleep(0.001)

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            # キャンセル前に評価し終えたウィンドウは通知済み
            assert [e.timestamp for e in received] == [32.0]

            scorer.gate.set()
            return await stream.process(_tone(1, 0.45), 4 * FRAME_MS)

        with VADStream(scorer, _config(return_probabilities=True)) as stream:
            result = asyncio.run(run(stream))

        assert [e.timestamp for e in received] == [32.0, 64.0, 96.0, 128.0, 160.0]
        assert [e.probability for e in received] == pytest.approx([0.1, 0.2, 0.3, 0.4, 0.45])
        assert result.probability == pytest.approx(0.45)
        # 実行中だった呼び出しの状態は採用されず、再評価に同じ状態が渡る
        assert scorer.received_states == [0, 1, 1, 2, 3, 4]


class TestVADStreamFlush:
    """flush テスト"""

    def test_flush_in_non_speech_is_noop(self):
        with VADStream(MockScorer(), _config()) as stream:
            _feed(stream, _frames(3))
            assert stream.flush() == []

    def test_flush_emits_tail_segment(self):
        with VADStream(MockScorer(probabilities=[0.9] * 10), _config()) as stream:
            _feed(stream, _frames(10))
            events = stream.flush()

            assert [type(e) for e in events] == [SpeechEndEvent, SpeechSegmentEvent]
            assert events[0].timestamp == 320.0  # 最後に観測した時刻
            assert events[0].probability == 0.9
            segment = events[1].segment
            assert len(segment.samples) == 10 * FRAME
            assert segment.start_time == 0.0
            assert segment.end_time == 320.0
            assert stream.state == SpeechState.NON_SPEECH

    def test_flush_uses_end_of_received_audio(self):
        """最後のチャンクでウィンドウが完成しなくても末尾の時刻で終了する"""
        with VADStream(MockScorer(probabilities=[0.9] * 10), _config()) as stream:
            _feed(stream, _frames(10))
            _feed(stream, [np.zeros(100, dtype=np.float32)], [320.0])
            assert stream.last_timestamp == pytest.approx(326.25)

            events = stream.flush()
            assert events[0].timestamp == pytest.approx(326.25)
            segment = events[1].segment
            assert len(segment.samples) == 10 * FRAME + 100
            assert segment.end_time - segment.start_time == pytest.approx(segment.duration_ms)

    def test_flush_with_timestamp(self):
        with VADStream(MockScorer(probabilities=[0.9] * 10), _config()) as stream:
            _feed(stream, _frames(10))
            events = stream.flush(timestamp=1000.0)
            assert events[0].timestamp == 1000.0
            assert events[1].segment.end_time == 1000.0

    def test_flush_twice(self):
        with VADStream(MockScorer(probabilities=[0.9] * 10), _config()) as stream:
            _feed(stream, _frames(10))
            assert len(stream.flush()) == 2
            assert stream.flush() == []

    def test_flush_short_speech(self):
        with VADStream(MockScorer(probabilities=[0.9, 0.9]), _config()) as stream:
            _feed(stream, _frames(2))
            events = stream.flush()
            assert [type(e) for e in events] == [SpeechEndEvent]
            assert events[0].duration_ms is None


class TestVADStreamReset:
    """reset テスト"""

    PATTERN = [0.0] * 3 + [0.5] * 8 + [0.0] * 4 + [0.5] * 2 + [0.0] * 4

    def _pattern_chunks(self):
        audio = np.concatenate([_tone(1, a) for a in self.PATTERN])
        return _split(audio, 320)

    def test_reset_matches_fresh_stream(self):
        chunks = self._pattern_chunks()

        with VADStream(EnergyScorer(), _config()) as used:
            # 発話途中 + 残余ありの状態からリセット
            _feed(used, [_tone(4, 0.5), np.full(300, 0.5, dtype=np.float32)])
            assert used.is_speech
            used.reset()
            assert used.state == SpeechState.NON_SPEECH
            after_reset = _events(_feed(used, chunks))

        with VADStream(EnergyScorer(), _config()) as fresh:
            expected = _events(_feed(fresh, chunks))

        assert _signature(after_reset) == _signature(expected)
        seg_a = [e.segment for e in after_reset if isinstance(e, SpeechSegmentEvent)]
        seg_b = [e.segment for e in expected if isinstance(e, SpeechSegmentEvent)]
        assert len(seg_a) == len(seg_b) >= 1
        for a, b in zip(seg_a, seg_b):
            np.testing.assert_array_equal(a.samples, b.samples)

    def test_reset_restores_recurrent_state(self):
        scorer = MockScorer(probabilities=[0.9] * 4)
        with VADStream(scorer, _config()) as stream:
            _feed(stream, _frames(3))
            stream.reset()
            _feed(stream, _frames(1))
        assert scorer.received_states == [0, 1, 2, 0]

    def test_reset_discards_unflushed_segment(self):
        segments = []
        with VADStream(MockScorer(probabilities=[0.9] * 10), _config()) as stream:
            stream.set_callbacks(on_segment=segments.append)
            _feed(stream, _frames(10))
            stream.reset()
            assert stream.flush() == []
            assert stream.last_probability == 0.0
            assert stream.last_timestamp is None
        assert segments == []


class TestVADStreamConfigUpdate:
    """update_config テスト"""

    def test_update_keeps_speech_state(self):
        probs = [0.9, 0.9, 0.9, 0.9, 0.9, 0.1]
        with VADStream(MockScorer(probabilities=probs), _config()) as stream:
            _feed(stream, _frames(5))
            stream.update_config(min_silence_ms=32)
            assert stream.is_speech
            assert stream.config.min_silence_ms == 32

            result = _feed(stream, _frames(1), [160.0])[0]
            assert not result.is_speech
            assert isinstance(result.events[-1], SpeechSegmentEvent)
            # バッファは維持されている（発話開始から 6 ウィンドウ分）
            assert len(result.events[-1].segment.samples) == 6 * FRAME

    def test_invalid_update_rejected(self):
        with VADStream(MockScorer(), _config()) as stream:
            with pytest.raises(VADConfigError):
                stream.update_config(negative_threshold=0.8)
            assert stream.config.negative_threshold == 0.3


class TestVADStreamBufferCap:
    """発話バッファの上限"""

    def test_overflow_reported(self):
        probs = [0.9] * 30 + [0.1] * 3
        config = _config(max_buffer_ms=200)  # 3200 samples
        with VADStream(MockScorer(probabilities=probs), config) as stream:
            events = _events(_feed(stream, _frames(len(probs))))

        overflow = [e for e in events if isinstance(e, BufferOverflowEvent)]
        assert overflow
        assert all(e.dropped_ms > 0 for e in overflow)

        segment = events[-1].segment
        assert segment.duration_ms <= 200.0
        assert segment.duration_ms == pytest.approx(len(segment.samples) / SR * 1000)
        assert segment.end_time > segment.start_time


class TestVADStreamCallbacksAndLifecycle:
    """コールバックとライフサイクル"""

    def test_callbacks_called_in_order(self):
        calls = []
        with VADStream(MockScorer(probabilities=SPEECH_PROBS), _config()) as stream:
            stream.set_callbacks(
                on_speech_start=lambda e: calls.append(("start", e.timestamp)),
                on_speech_end=lambda e: calls.append(("end", e.timestamp)),
                on_segment=lambda s: calls.append(("segment", s.end_time)),
            )
            _feed(stream, _frames(len(SPEECH_PROBS)))
        assert calls == [("start", 192.0), ("end", 416.0), ("segment", 416.0)]

    def test_closed_stream_rejects_calls(self):
        stream = VADStream(MockScorer(), _config())
        stream.close()
        assert stream.closed
        with pytest.raises(StreamClosedError):
            _feed(stream, _frames(1))
        with pytest.raises(StreamClosedError):
            stream.flush()
        stream.close()  # 2回目は何もしない

    def test_async_context_manager(self):
        async def run():
            async with VADStream(MockScorer(probabilities=[0.9]), _config()) as stream:
                result = await stream.process(np.zeros(FRAME, dtype=np.float32), 0.0)
            return stream, result

        stream, result = asyncio.run(run())
        assert result.is_speech
        assert stream.closed
