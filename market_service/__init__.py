"""
行情数据服务
独立的行情数据微服务，提供 HTTP 接口

架构分层：
  数据获取层 (Acquisition)  → 从上游行情提供商（Yahoo Finance）拉取原始数据
  缓存层     (Cache)        → Redis 缓存，按数据类别设置过期策略
  处理层     (Processing)   → 数据清洗、格式化、标准化
  分析层     (Analysis)     → 技术指标计算与综合信号
"""

__version__ = "1.0.0"
