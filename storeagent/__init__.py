"""
storeagent - agent command orchestration for the store admin platform.
"""

__version__ = "1.0.0"
