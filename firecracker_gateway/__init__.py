"""Firecracker execution gateway - HTTP front door for microVM code execution"""

__version__ = "0.1.0"
