"""
VAD エラーの例外クラス階層

ストリーミング VAD で発生する各種エラーを分類するための例外クラスを定義。
致命的なのは構築時の設定エラーのみで、それ以外はイベントとして通知される。
"""


class VADError(Exception):
    """VAD エラーの基底クラス"""

    pass


class VADConfigError(VADError, ValueError):
    """設定エラー（しきい値の逆転、非正の時間パラメータなど）"""

    pass


class ScorerError(VADError):
    """スコアラー呼び出しの失敗（ウィンドウ単位で回復可能）"""

    def __init__(self, message: str, scorer: str = "unknown"):
        self.scorer = scorer
        super().__init__(message)


class ScorerOutputError(ScorerError):
    """スコアラーが [0, 1] 外または非有限の確率を返した"""

    def __init__(self, value: float, scorer: str = "unknown"):
        self.value = value
        super().__init__(f"Scorer {scorer} returned invalid probability: {value!r}", scorer)


class StreamClosedError(VADError):
    """close() 済みのストリームに対する操作"""

    pass
