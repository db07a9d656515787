"""Yoman: reminder delivery and appointment booking engine"""

__version__ = "0.3.0"
