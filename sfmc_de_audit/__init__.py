"""SFMC Data Extension dependency audit.

Pulls automation, filter, query, import, triggered send, journey and data
extract metadata in bulk and decides which Data Extensions can be deleted.
"""

__version__ = "0.1.0"
