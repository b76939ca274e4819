"""
Common: エラー分類

パイプライン全体で使う例外を一か所で定義する。
インフラ層の例外 (SQLAlchemy / Redis / AMQP) はアダプタの境界で
ここの例外に変換してから上位へ伝える。

    ValidationError   クライアント起因。リトライしない (400)
    NotFoundError     存在しないエンティティ (404)
    PersistenceError  ストア障害。リクエストは失敗扱い (500)
    TransportError    キャッシュ / ブローカー障害。縮退して吸収する
    ParseError        壊れたイベント本文。コンシューマは破棄する
    HandlerError      コンシューマ側の処理失敗。再配送で再試行する
"""


class PipelineError(Exception):
    """注文パイプラインの基底例外"""


class ValidationError(PipelineError):
    """入力値の検証に失敗した。field に違反したフィールド名を持つ。"""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field
        self.message = message


class NotFoundError(PipelineError):
    pass


class PersistenceError(PipelineError):
    pass


class TransportError(PipelineError):
    pass


class ParseError(PipelineError):
    pass


class HandlerError(PipelineError):
    pass
