"""
KitForge Recolor Module

Template mode recoloring: region resolution, the masked compositor, geometry
and color guards, and the pipeline that publishes validated renders.
"""

__version__ = "1.0.0"
