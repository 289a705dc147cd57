"""
数据流分层架构
  Layer 1 – Acquisition  : 数据获取（Yahoo Finance）
  Layer 2 – Cache        : Redis 缓存（键派生 + 分类 TTL）
  Layer 3 – Processing   : 数据清洗与格式化
  Layer 4 – Analysis     : 技术指标计算
"""
