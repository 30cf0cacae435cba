# -*- coding: utf-8 -*-
"""
TIMPs - 对话 Agent 的记忆子系统
"""
__version__ = "0.1.0"
