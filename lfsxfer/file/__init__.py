"""
File Module - Local Object Storage
"""

from .objects import LocalObjectStore, ObjectStoreError, hash_file

__all__ = ['LocalObjectStore', 'ObjectStoreError', 'hash_file']
