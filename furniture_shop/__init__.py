"""
Furniture shop order and payment service
"""
__version__ = "1.0.0"
