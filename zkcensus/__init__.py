"""
zk-census: anonymous, sybil-resistant census registration
"""

__version__ = "1.0.0"
