"""
kiyoshi - 定时数据库清理服务
"""

__version__ = "0.1.0"
