"""
行情数据流分层架构
  Layer 1 – Acquisition  : 数据获取（多行情数据源，失败返回 None）
  Layer 2 – Cache        : 日 K 内存缓存（按代码，TTL 1 小时）
  Layer 3 – Processing   : 时间戳规范化、K 线清洗、分时聚合
  Layer 4 – Analysis     : 技术指标计算
"""
