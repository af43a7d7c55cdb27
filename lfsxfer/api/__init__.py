"""
API Module - LFS Server Client
"""

from .client import LfsApiClient

__all__ = ['LfsApiClient']
