"""
Fulfillment Service — 注文履行エンジン

在庫台帳・取引ステートマシン・通知/SMS/Webhook 配信をまとめたサービス。
"""
