"""
lfsxfer - Custom Transfer Adapters

Delegates large-file uploads and downloads to external agent
processes speaking a line-delimited JSON protocol, while this side
keeps control of concurrency, progress, auth signaling and verification.
"""

__version__ = "1.0.0"
