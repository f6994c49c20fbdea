"""
Agent层

- runtime: 工具执行器、流累积器、工具循环
- security: 模式工具策略
- subagent: 子代理
- infrastructure: 对话存储
"""
