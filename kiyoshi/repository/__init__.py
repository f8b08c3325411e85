"""
数据访问层
"""

from .gateway import DatabaseGateway, SqlAlchemyGateway, classify_error

__all__ = ['DatabaseGateway', 'SqlAlchemyGateway', 'classify_error']
