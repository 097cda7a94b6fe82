"""
Event ticketing API (FastAPI + Beanie + MongoDB)
"""

__version__ = "1.0.0"
