"""
访客统计服务
"""
__version__ = "1.0.0"
