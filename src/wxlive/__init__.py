"""
wxlive - 微信 v4 数据库实时解密
"""

__version__ = '0.1.0'
