"""
Order Service — 注文確定・在庫引き落とし・ステータス管理
"""
