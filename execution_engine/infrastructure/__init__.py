"""
Engine Infrastructure Layer

Configuration, logging and isolation adapters.
"""
