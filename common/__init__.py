"""
Shared code for the Net-Rewire tunnel: framing, packet classification and utilities.
"""
