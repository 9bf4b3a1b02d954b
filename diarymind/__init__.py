"""
diarymind - per-user memory lifecycle engine for journal entries
"""

__version__ = "0.1.0"
__logo__ = "📓"
