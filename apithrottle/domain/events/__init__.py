"""Domain Event definitions.

Represents significant occurrences in the life of a queued request that
listeners (logging, CLI progress, tests) might react to.
"""
