"""VAD設定

すべての時間パラメータをミリ秒で統一。
デフォルト値は Silero VAD v5 をブラウザ向けに調整した値
（positive 0.3 / negative 0.25 / silence 1400ms / pre-roll 800ms）。
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Mapping

from .exceptions import VADConfigError


@dataclass(frozen=True, slots=True)
class VADConfig:
    """
    VAD設定（すべてミリ秒単位で統一）

    二つのしきい値によるヒステリシスと最小継続時間で
    発話区間を確定する。

    - positive_threshold: これを超えると発話開始 / 発話継続
    - negative_threshold: これを下回ると無音として累積
    - 両者の間（デッドゾーン）は状態も無音累積も変更しない

    Raises:
        VADConfigError: negative_threshold >= positive_threshold、
            範囲外のしきい値、非正の時間パラメータ

    pre_roll_ms だけは 0 を許可する（プリロールなしでセグメントを出力）。
    負の値は不可。

    Usage:
        # デフォルト設定
        config = VADConfig()

        # カスタム設定
        config = VADConfig(
            positive_threshold=0.5,
            negative_threshold=0.35,
            min_silence_ms=600,
        )

        # 辞書から作成
        config = VADConfig.from_dict({"positive_threshold": 0.6})

        # 一部だけ変更した新しい設定
        config = config.merged(min_speech_ms=250)
    """

    # 音声検出閾値
    positive_threshold: float = 0.3

    # 非音声閾値（positive_threshold より小さいこと）
    negative_threshold: float = 0.25

    # 音声終了判定に必要な無音継続時間
    min_silence_ms: int = 1400

    # 発話開始前に保持し、セグメント先頭に付与する音声の長さ
    pre_roll_ms: int = 800

    # セグメントとして出力する最小発話時間（これ未満は破棄）
    min_speech_ms: int = 400

    # 発話中にバッファする音声の上限（超過分は古い方から破棄）
    max_buffer_ms: int = 60_000

    # ウィンドウごとの確率を ProbabilityEvent として出力するか
    return_probabilities: bool = False

    def __post_init__(self) -> None:
        for name in ("positive_threshold", "negative_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise VADConfigError(f"{name} must be within [0, 1], got {value}")

        if self.negative_threshold >= self.positive_threshold:
            raise VADConfigError(
                "negative_threshold must be lower than positive_threshold "
                f"(got {self.negative_threshold} >= {self.positive_threshold})"
            )

        for name in ("min_silence_ms", "min_speech_ms", "max_buffer_ms"):
            value = getattr(self, name)
            if value <= 0:
                raise VADConfigError(f"{name} must be positive, got {value}")

        # 0 はプリロールなしとして有効
        if self.pre_roll_ms < 0:
            raise VADConfigError(f"pre_roll_ms must not be negative, got {self.pre_roll_ms}")

        if self.max_buffer_ms < self.pre_roll_ms:
            raise VADConfigError(
                f"max_buffer_ms ({self.max_buffer_ms}) must not be smaller "
                f"than pre_roll_ms ({self.pre_roll_ms})"
            )

    @classmethod
    def from_dict(cls, config: Mapping[str, Any]) -> VADConfig:
        """辞書から設定を作成（未指定のキーはデフォルト値）"""
        unknown = set(config) - cls.field_names()
        if unknown:
            raise VADConfigError(f"Unknown VAD config keys: {', '.join(sorted(unknown))}")
        return cls(**dict(config))

    def to_dict(self) -> dict[str, Any]:
        """辞書に変換"""
        return asdict(self)

    def merged(self, **changes: Any) -> VADConfig:
        """指定したフィールドだけを置き換えた設定を返す（検証付き）"""
        unknown = set(changes) - self.field_names()
        if unknown:
            raise VADConfigError(f"Unknown VAD config keys: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    @classmethod
    def field_names(cls) -> set[str]:
        return {f.name for f in fields(cls)}
