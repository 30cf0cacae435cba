# -*- coding: utf-8 -*-
"""
存储适配层
"""
from .sqlite import SQLiteDatabase, MEMORY_SCHEMA

__all__ = [
    'SQLiteDatabase',
    'MEMORY_SCHEMA',
]
