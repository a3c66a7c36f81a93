"""
Assist Core - AI-assisted conversation and escalation engine
"""
__version__ = "1.0.0"
