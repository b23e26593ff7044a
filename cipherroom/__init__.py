"""
cipherroom
----------
Password-keyed chat rooms with end-to-end encrypted text and file transfer.
"""

__version__ = "1.0.0"
