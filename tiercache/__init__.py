"""
tiercache - resilient tiered cache in front of unreliable upstream APIs.
"""
__version__ = "0.1.0"
