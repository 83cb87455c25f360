"""
Ambient utilities: configuration, structured logging and retry.
"""
