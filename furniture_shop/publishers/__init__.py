"""
Event publishers package
"""
