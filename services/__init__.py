"""
thermopoll Services

Layered service architecture:
1. System Service - Memory diagnostics (psutil)
2. Acquisition Service - Frame codec, polling engine, conversion, bounded store
"""

__version__ = "1.0.0"
