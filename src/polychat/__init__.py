"""
polychat - multi-provider chat orchestration with tool use.
"""

__version__ = "0.1.0"
