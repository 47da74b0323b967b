"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- 狀態機：集中管理所有階段轉換
- Registry：管理房間的建立與回收
- Manager：管理成員與回合的生命週期
- Arbitration：決定每回合唯一的搶答者
- Broadcast：把狀態變更扇出給房間內所有玩家
- Locks：並發控制工具
"""
