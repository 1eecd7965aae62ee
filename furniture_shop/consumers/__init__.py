"""
Message consumers package
"""
