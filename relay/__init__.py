"""
Signature Relay

End-to-end encrypted signature sessions relayed through an untrusted server.
"""

__version__ = "1.0.0"
