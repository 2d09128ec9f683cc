"""
PayGuard - Background Tasks
"""
