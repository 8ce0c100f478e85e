"""
🔬 DATA PROCESSING MODULE 🔬

• temporal_transforms.py: logmean (Rytov log-ratio of raw light levels)
"""

from .temporal_transforms import logmean

__all__ = ['logmean']
