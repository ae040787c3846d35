"""LiveTrack - live bus location service"""

__version__ = "1.0.0"
