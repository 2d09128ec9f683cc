"""
PayGuard - Utilities Package
"""
