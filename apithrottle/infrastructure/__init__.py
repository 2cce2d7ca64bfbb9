"""Infrastructure Layer: concrete implementations and adapters.

Connects the governor to the outside world (HTTP, console, configuration
files, logging) and implements the interfaces defined in the domain layer.
"""
