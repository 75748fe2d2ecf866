"""Order synchronization engine.

Ingests commerce-platform order webhooks, reconciles them into versioned
order records and fans the changes out to connected viewers.
"""

__version__ = "0.1.0"
