"""
Order Pipeline: 例外定義

ドメイン層の例外は OrderDomainError を基底とする。
Consumer はこの基底クラスを「業務ルール違反 = 再試行しても結果は同じ」と
みなしてメッセージを完了させる。
"""


class OrderDomainError(Exception):
    """注文ドメインの不変条件違反"""


class InvalidArgument(OrderDomainError):
    """入力値が不正（空の名前、200 文字超、0 以下の金額）"""


class InvalidTransition(OrderDomainError):
    """現在の状態からは許可されない状態遷移"""


class ConcurrencyConflict(InvalidTransition):
    """楽観的ロック (version) の競合: 別の書き込みが先にコミットした"""


class EventDeserializationError(Exception):
    """メッセージ本文をイベントとして解釈できない（ポイズンメッセージ）"""
