"""
Data access layer.
"""
