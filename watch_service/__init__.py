"""
watchprice 行情监控服务
按交易时段轮询自选股行情，计算技术指标，并在涨跌幅超过阈值时发送桌面提醒

架构分层：
  数据获取层 (Acquisition)  → 新浪 / 腾讯 / Yahoo 实时行情，东方财富 / Yahoo 日 K
  缓存层     (Cache)        → 日 K 内存缓存，TTL 过期惰性淘汰
  处理层     (Processing)   → 时间戳规范化、K 线清洗、分时聚合
  分析层     (Analysis)     → MACD / RSI / KDJ / DK 指标计算
"""

__version__ = "1.0.0"
