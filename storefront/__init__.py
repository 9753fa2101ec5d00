"""
Storefront Service — 教育ゲームストアの注文・決済フルフィルメント

注文(Order)のライフサイクルを Event Sourcing で管理し、
決済ゲートウェイ(Stripe)からの通知で確定・キャンセルする。
"""
