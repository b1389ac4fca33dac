"""
External protocol integrations.
"""
