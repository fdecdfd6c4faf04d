"""
KitForge Colors Module

Provides Lab color space math and k-means dominant color extraction used to
suggest colorways from reference images.
"""

__version__ = "1.0.0"
