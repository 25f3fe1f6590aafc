"""
msgguard: message compliance and moderation pipeline.
"""

__version__ = "0.3.0"
