"""
JTD Pipeline - durable notification delivery queue with dead-letter recovery
"""
__version__ = "1.0.0"
