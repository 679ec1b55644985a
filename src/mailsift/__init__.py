"""
mailsift - incremental density-based clustering for an email-intelligence pipeline.
"""

__version__ = "0.1.0"
