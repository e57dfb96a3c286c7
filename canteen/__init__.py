"""
食堂订餐与赊账后端
"""

__version__ = "1.0.0"
