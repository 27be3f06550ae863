"""
食堂预订与取餐服务后端
"""

__version__ = "1.0.0"
