"""
Dine-in table-session and order lifecycle engine
"""

__version__ = "1.0.0"
