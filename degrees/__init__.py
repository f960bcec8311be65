"""
Degrees of Separation - FastAPI Application

This package contains the core application logic for finding the shortest
chain of follow relationships between two members of a social graph using
breadth-first search backed by a persistent connection cache.
"""

__version__ = "1.0.0"
