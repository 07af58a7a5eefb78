# pairline/__init__.py
# Pairline: pairs anonymous clients one-to-one and relays the signaling messages
# they need to open a direct peer-to-peer media channel.

__version__ = '1.0.0'
