"""
Novel Video Agent - turn a novel into narrated chapter videos.
"""

__version__ = "1.0.0"
