"""streamvad - ストリーミング音声活動検出

任意長の音声チャンクを受け取り、固定長ウィンドウへの整列、
ヒステリシスによる発話区間判定、プリロール付きセグメントの
組み立てを行う。

Usage:
    import asyncio
    from streamvad import VADStream, VADConfig
    from streamvad.backends import SileroScorer

    async def main(source):
        stream = VADStream(SileroScorer(), VADConfig(min_silence_ms=800))
        async for chunk, timestamp in source:
            result = await stream.process(chunk, timestamp)
            for segment in result.segments:
                transcribe(segment.samples)

        # 発話途中で終わったストリームの末尾セグメント
        for event in stream.flush():
            ...
        stream.close()

    # 別のスコアラーを使用
    from streamvad.backends import WebRTCScorer
    stream = VADStream(WebRTCScorer(mode=3))
"""

from .aligner import FrameAligner
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
    confidence_from_probability,
)
from .exceptions import (
    ScorerError,
    ScorerOutputError,
    StreamClosedError,
    VADConfigError,
    VADError,
)
from .preroll import PreRollBuffer, SegmentAssembler
from .scoring import ScorerAdapter
from .state_machine import HysteresisStateMachine, Transition
from .stream import VADStream

__version__ = "0.1.0"

__all__ = [
    "VADStream",
    "VADConfig",
    "FrameAligner",
    "ScorerAdapter",
    "HysteresisStateMachine",
    "Transition",
    "PreRollBuffer",
    "SegmentAssembler",
    # Data model / events
    "SpeechState",
    "SpeechSegment",
    "SpeechStartEvent",
    "SpeechEndEvent",
    "SpeechSegmentEvent",
    "ScorerErrorEvent",
    "BufferOverflowEvent",
    "ProbabilityEvent",
    "VADEvent",
    "ProcessResult",
    "confidence_from_probability",
    # Errors
    "VADError",
    "VADConfigError",
    "ScorerError",
    "ScorerOutputError",
    "StreamClosedError",
]
