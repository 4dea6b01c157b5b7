"""
Browser automation module
"""
from .automation import BrowserAutomationExecutor

__all__ = [
    "BrowserAutomationExecutor",
]
