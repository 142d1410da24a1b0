"""
Node orchestration modules.
"""
