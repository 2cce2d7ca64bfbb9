"""Domain Layer: value objects, request model, events and ports.

Holds no I/O. The infrastructure layer implements the interfaces defined here.
"""
