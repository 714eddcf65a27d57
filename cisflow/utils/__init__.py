"""
Utility modules for cisflow: logging setup and terminal reports.
"""

from .logging_config import setup_logging

__all__ = [
    "setup_logging",
]
