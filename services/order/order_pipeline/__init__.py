"""
Order Pipeline: Transactional Outbox による注文処理パイプライン

注文の作成・状態遷移と、その変更を伝えるイベントを同一トランザクションで
保存し、バックグラウンドの Relay がブローカーへ配信する。
"""
