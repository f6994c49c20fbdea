"""
系统层

- llm: 统一数据模型、协议适配器、HTTP 传输
- services: 日志、配置中心
"""
