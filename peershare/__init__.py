"""
PeerShare - Direct peer-to-peer file sharing

A lightweight coordination service pairs an owner with its receivers; the
payload then travels over a direct channel in fixed-size chunks.
"""

__version__ = "1.0.0"
